import logging
from dataclasses import replace
from datetime import datetime
from decimal import Decimal

import pytest

from society_dues.data_models import MemberAccount, PaymentMethod
from society_dues.errors import DuplicatePayment, InvalidAmount, MemberNotFound, NoConfig
from society_dues.service import PaymentService, create_service
from society_dues.store import SqlDuesStore

LATE = datetime(2026, 10, 28, 18, 0)


def test_new_member_starts_with_recurring_charge(service):
    member = service.create_member("Asha", "a@x.com", "101")
    assert member.dues_override == Decimal("1300")
    assert service.create_member("Ravi", "r@x.com", "102", "500").dues_override == Decimal("500")


def test_new_member_without_config_keeps_zero_dues(store):
    member = create_service(store).create_member("Asha", "a@x.com", "101")
    assert member.dues_override == 0


def test_negative_opening_dues_rejected(service):
    with pytest.raises(ValueError):
        service.create_member("Asha", "a@x.com", "101", "-1")


def test_full_payment_persists_member_ledger_and_mirror(service, store):
    store.add_member(MemberAccount(id="m1", name="Asha", email="a@x.com", flat="101"))
    store.add_legacy_member(MemberAccount(id="legacy", email="a@x.com", flat="101"))

    outcome = service.record_payment("m1", Decimal("1300"), PaymentMethod.UPI)

    assert outcome.member.dues_override == 0
    assert outcome.member.paid_total == Decimal("1300")
    assert outcome.mirrored
    assert store.get_legacy_member("legacy").paid_total == Decimal("1300")

    [record] = store.list_payments()
    assert record == outcome.record
    assert record.receipt == "RCPT-TEST-1"
    assert record.method is PaymentMethod.UPI
    assert record.occurred_date_string == "10/10/2026"
    assert record.previous_due == Decimal("1300")
    assert record.remaining_due == 0
    assert not record.was_late_payment
    assert record.late_fee_added_to_dues == 0

    # Paid for the cycle now.
    assert service.pending("m1") == 0
    assert service.dashboard().paid_this_cycle == 1


def test_late_partial_payment_then_remaining_balance(service, store, clock):
    store.add_member(MemberAccount(id="m1", name="Asha", email="a@x.com", flat="101"))
    clock.now = LATE

    first = service.quote("m1")
    assert first.max_payable == Decimal("1350")

    outcome = service.record_payment("m1", Decimal("1000"), PaymentMethod.CASH)
    assert outcome.allocation.new_pending == Decimal("350")
    assert outcome.member.late_fee_assessed_period == "2026-10"
    assert outcome.record.was_late_payment
    assert outcome.record.late_fee_added_to_dues == Decimal("50")

    second = service.quote("m1")
    assert second.pending == Decimal("350")
    assert second.late_fee == 0

    final = service.record_payment("m1", second.max_payable, PaymentMethod.CARD)
    assert final.member.dues_override == 0
    assert final.member.paid_total == Decimal("1350")
    assert not final.allocation.late_fee_applied


def test_invalid_amount_writes_nothing(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    with pytest.raises(InvalidAmount):
        service.record_payment("m1", Decimal("0"), PaymentMethod.CASH)
    assert store.list_payments() == []
    assert store.get_member("m1").paid_total == 0


def test_missing_config_blocks_payment(store):
    service = create_service(store)
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    with pytest.raises(NoConfig):
        service.record_payment("m1", Decimal("100"), PaymentMethod.CASH)
    assert store.list_payments() == []


def test_unknown_member(service):
    with pytest.raises(MemberNotFound):
        service.quote("ghost")


class BrokenMirror:
    def apply_to_mirror(self, member, amount, new_pending):
        raise ConnectionError("mirror unavailable")


def test_mirror_failure_does_not_fail_payment(store, config, clock, caplog):
    store.save_config(config)
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    service = PaymentService(store, store, store, mirror=BrokenMirror(), clock=clock)

    with caplog.at_level(logging.WARNING, logger="society_dues.service"):
        outcome = service.record_payment("m1", Decimal("1300"), PaymentMethod.UPI)

    assert not outcome.mirrored
    assert store.get_member("m1").paid_total == Decimal("1300")
    assert len(store.list_payments()) == 1
    assert "Failed to update mirror record" in caplog.text


def test_manual_edit(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101", late_fee_assessed_period="2026-09"))
    member = service.adjust_member("m1", dues="200")
    assert member.dues_override == Decimal("200")
    assert member.paid_total == 0
    assert member.late_fee_assessed_period == "2026-09"
    with pytest.raises(ValueError):
        service.adjust_member("m1", paid="-3")


def test_reminders_list_unpaid_members_with_email(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    store.add_member(MemberAccount(id="m2", email="b@x.com", flat="102"))
    store.add_member(MemberAccount(id="m3", email="", flat="103"))
    service.record_payment("m1", Decimal("1300"), PaymentMethod.UPI)

    assert [(m.id, amount) for m, amount in service.reminders()] == [("m2", Decimal("1300"))]
    summary = service.dashboard()
    assert summary.total_members == 3
    assert summary.total_outstanding == Decimal("2600")
    assert summary.total_collected == Decimal("1300")


def test_ledger_subscription_sees_service_payments(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    seen = []
    store.subscribe(seen.append)
    outcome = service.record_payment("m1", Decimal("1300"), PaymentMethod.RAZORPAY, gateway_payment_id="pay_9")
    assert seen == [outcome.record]
    assert seen[0].gateway_payment_id == "pay_9"


def test_store_accepts_any_sqlalchemy_url(tmp_path):
    store = SqlDuesStore(f"sqlite:///{tmp_path / 'other.sqlite3'}")
    assert store.list_members() == []


def test_unknown_method_writes_nothing(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    with pytest.raises(ValueError):
        service.record_payment("m1", Decimal("100"), "bitcoin")
    member = store.get_member("m1")
    assert member.paid_total == 0
    assert member.dues_override == 0
    assert store.list_payments() == []


def test_method_label_is_accepted(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    outcome = service.record_payment("m1", Decimal("100"), "bank transfer")
    assert outcome.record.method is PaymentMethod.BANK_TRANSFER


def test_sub_paisa_amount_is_rejected_before_any_write(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101", dues_override=Decimal("1300")))
    with pytest.raises(InvalidAmount):
        service.record_payment("m1", Decimal("100.005"), PaymentMethod.CASH)
    assert store.get_member("m1").paid_total == 0
    assert store.list_payments() == []


def test_stored_balances_conserve_money(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101", dues_override=Decimal("1300")))
    service.record_payment("m1", Decimal("100.05"), PaymentMethod.CASH)
    service.record_payment("m1", Decimal("0.99"), PaymentMethod.UPI)
    member = store.get_member("m1")
    assert member.paid_total == Decimal("101.04")
    assert member.dues_override == Decimal("1198.96")
    assert member.paid_total + member.dues_override == Decimal("1300")


def test_gateway_payment_is_recorded_once(service, store):
    store.add_member(MemberAccount(id="m1", email="a@x.com", flat="101"))
    service.record_payment("m1", Decimal("300"), PaymentMethod.RAZORPAY, gateway_payment_id="pay_1")
    with pytest.raises(DuplicatePayment):
        service.record_payment("m1", Decimal("300"), PaymentMethod.RAZORPAY, gateway_payment_id="pay_1")
    assert store.get_member("m1").paid_total == Decimal("300")
    assert len(store.list_payments()) == 1


@pytest.mark.parametrize("field", ["maintenance_charge", "late_fee"])
@pytest.mark.parametrize("value", ["-1", "NaN", "10.001"])
def test_config_charges_must_be_whole_paise(service, config, field, value):
    with pytest.raises(ValueError):
        service.save_config(replace(config, **{field: Decimal(value)}))
