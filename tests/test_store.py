from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_payment
from society_dues.data_models import MemberAccount
from society_dues.errors import MemberNotFound
from society_dues.utils import epoch_ms


def test_config_is_absent_until_saved(store, config):
    assert store.get_config() is None
    store.save_config(config)
    assert store.get_config() == config


def test_saving_config_replaces_previous(store, config):
    store.save_config(config)
    config.late_fee = Decimal("75")
    store.save_config(config)
    assert store.get_config().late_fee == Decimal("75")


def test_add_and_get_member(store):
    created = store.add_member(MemberAccount(id="", name="Asha", email="a@x.com", flat="101"))
    assert created.id
    loaded = store.get_member(created.id)
    assert loaded.email == "a@x.com"
    assert loaded.dues_override == 0
    assert store.get_member("missing") is None


def test_update_member_merges_payment_fields(store):
    store.add_member(MemberAccount(id="m1", name="Asha", email="a@x.com", flat="101"))
    updated = store.update_member("m1", dues=Decimal("350"), paid=Decimal("1000"), late_fee_assessed_on="2026-10")
    assert updated.dues_override == Decimal("350")
    assert updated.paid_total == Decimal("1000")
    assert updated.late_fee_assessed_period == "2026-10"
    assert updated.name == "Asha"
    assert store.get_member("m1") == updated


def test_update_unknown_member_raises(store):
    with pytest.raises(MemberNotFound):
        store.update_member("nope", dues=Decimal("0"), paid=Decimal("0"), late_fee_assessed_on=None)


def test_list_members_in_creation_order(store):
    for i in range(3):
        store.add_member(MemberAccount(id=f"m{i}", name=f"Member {i}", flat=str(100 + i)))
    assert [m.id for m in store.list_members()] == ["m0", "m1", "m2"]


def test_ledger_append_and_query(store):
    early = make_payment(datetime(2026, 9, 5, 10, 0), email="a@x.com")
    late = make_payment(datetime(2026, 10, 5, 10, 0), email="B@x.com", flat="102")
    store.append_payment(early)
    store.append_payment(late)

    assert store.list_payments() == [early, late]
    assert store.payments_for_member("b@X.com") == [late]
    assert store.payments_for_member("") == []
    window = store.payments_between(epoch_ms(datetime(2026, 10, 1)), epoch_ms(datetime(2026, 10, 31, 23, 59)))
    assert window == [late]


def test_find_payment_by_gateway_id(store):
    online = make_payment(datetime(2026, 10, 5, 10, 0), gateway_payment_id="pay_1", gateway_order_id="order_1")
    store.append_payment(make_payment(datetime(2026, 10, 4, 10, 0)))
    store.append_payment(online)
    assert store.find_gateway_payment("pay_1") == online
    assert store.find_gateway_payment("pay_2") is None
    assert store.find_gateway_payment("") is None


def test_subscribers_see_appended_payments_until_unsubscribed(store):
    seen = []
    unsubscribe = store.subscribe(seen.append)
    first = make_payment(datetime(2026, 10, 5, 10, 0))
    store.append_payment(first)
    unsubscribe()
    store.append_payment(make_payment(datetime(2026, 10, 6, 10, 0)))
    assert seen == [first]


def test_failing_subscriber_does_not_break_append(store):
    def broken(record):
        raise RuntimeError("listener down")

    seen = []
    store.subscribe(broken)
    store.subscribe(seen.append)
    store.append_payment(make_payment(datetime(2026, 10, 5, 10, 0)))
    assert len(seen) == 1
    assert len(store.list_payments()) == 1


def test_mirror_update_matches_by_email_or_flat(store):
    store.add_legacy_member(MemberAccount(id="legacy1", email="", flat="101", paid_total=Decimal("200")))
    member = MemberAccount(id="m1", email="a@x.com", flat="101")
    assert store.apply_to_mirror(member, Decimal("1300"), Decimal("0"))
    mirrored = store.get_legacy_member("legacy1")
    assert mirrored.paid_total == Decimal("1500")
    assert mirrored.dues_override == 0


def test_mirror_update_without_match(store):
    member = MemberAccount(id="m1", email="a@x.com", flat="101")
    assert not store.apply_to_mirror(member, Decimal("1300"), Decimal("0"))
    assert not store.apply_to_mirror(MemberAccount(id="m2"), Decimal("1"), Decimal("0"))
