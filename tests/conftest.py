from datetime import datetime
from decimal import Decimal

import pytest

from society_dues.data_models import BillingConfig, MemberAccount, PaymentMethod, PaymentRecord
from society_dues.service import PaymentService
from society_dues.store import SqlDuesStore
from society_dues.utils import epoch_ms


class Clock:
    """Settable clock handed to the service."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig(
        maintenance_charge=Decimal("1000"),
        water_charge=Decimal("200"),
        sinking_fund=Decimal("100"),
        due_date_iso="2026-10-25",
        late_fee=Decimal("50"),
        contact_email="office@example.org",
    )


@pytest.fixture
def new_member() -> MemberAccount:
    return MemberAccount(id="m1", email="a@x.com", flat="101", name="Asha")


def make_payment(
    when: datetime,
    amount: str = "1300",
    email: str = "a@x.com",
    flat: str = "101",
    **kwargs,
) -> PaymentRecord:
    return PaymentRecord(
        member_ref=email or flat,
        amount=Decimal(amount),
        method=kwargs.pop("method", PaymentMethod.UPI),
        email=email,
        flat=flat,
        occurred_at=epoch_ms(when),
        **kwargs,
    )


@pytest.fixture
def store(tmp_path) -> SqlDuesStore:
    return SqlDuesStore(f"sqlite:///{tmp_path / 'dues.sqlite3'}")


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 10, 10, 11, 0))


@pytest.fixture
def service(store, config, clock) -> PaymentService:
    store.save_config(config)
    counter = iter(range(1, 10_000))
    return PaymentService(
        profiles=store,
        configs=store,
        ledger=store,
        mirror=store,
        clock=clock,
        receipt_factory=lambda now: f"RCPT-TEST-{next(counter)}",
    )
