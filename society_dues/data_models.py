"""Data models for the dues engine.

This module defines dataclasses representing the entities the engine works
on: member accounts, the single billing configuration and the immutable
payment records kept in the ledger. Two further dataclasses carry the
engine's results (a payment quote and an allocation). Using dataclasses makes
it easy to construct, inspect and serialize these structures.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional


class PaymentMethod(str, Enum):
    """How a payment reached the society."""

    UPI = "UPI"
    CASH = "Cash"
    CARD = "Card"
    BANK_TRANSFER = "Bank Transfer"
    RAZORPAY = "Razorpay"
    MANUAL_EDIT = "Manual Edit"

    @classmethod
    def parse(cls, value: str) -> "PaymentMethod":
        """Look up a method by its label, case-insensitively.

        Stored records use lower-case tags (``"upi"``, ``"bank transfer"``);
        the CLI and API also accept the member names (``"BANK_TRANSFER"``).
        """
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().lower().replace("_", " ")
        for method in cls:
            if method.value.lower() == key:
                return method
        raise ValueError(f"Unknown payment method: {value}")

    @property
    def tag(self) -> str:
        return self.value.lower()


@dataclass
class MemberAccount:
    """A society member as held by the profile store.

    Attributes
    ----------
    id: str
        Stable opaque identifier.
    email: str
        Primary key for matching payments; may be empty.
    flat: str
        Fallback matching key when either side lacks an email.
    dues_override: Decimal
        The last persisted "dues" value. Written after every payment and by
        manual admin edits.
    paid_total: Decimal
        Cumulative lifetime amount paid.
    late_fee_assessed_period: Optional[str]
        The ``"YYYY-MM"`` period for which a late fee was already added to
        the member's dues, if any.
    """

    id: str
    email: str = ""
    flat: str = ""
    dues_override: Decimal = Decimal("0")
    paid_total: Decimal = Decimal("0")
    late_fee_assessed_period: Optional[str] = None
    name: str = ""
    status: str = "Active"


@dataclass
class BillingConfig:
    """The society-wide billing configuration.

    ``due_date_iso`` is a calendar date whose day-of-month is the monthly due
    day. ``due_date`` is the bare day number written by older admin screens
    and is only consulted when ``due_date_iso`` is missing or unparseable.
    """

    maintenance_charge: Decimal = Decimal("0")
    water_charge: Decimal = Decimal("0")
    sinking_fund: Decimal = Decimal("0")
    due_date_iso: str = ""
    late_fee: Decimal = Decimal("0")
    due_date: Optional[str] = None
    contact_email: str = ""

    @property
    def recurring_charge(self) -> Decimal:
        return self.maintenance_charge + self.water_charge + self.sinking_fund


@dataclass(frozen=True)
class PaymentRecord:
    """An entry of the append-only payment ledger.

    ``occurred_at`` (epoch milliseconds) is authoritative for the record's
    period. ``occurred_date_string`` is the ``DD/MM/YYYY`` fallback written
    by clients that did not store a timestamp.
    """

    member_ref: str
    amount: Decimal
    method: PaymentMethod
    email: str = ""
    flat: str = ""
    occurred_at: Optional[int] = None
    occurred_date_string: Optional[str] = None
    late_fee_added_to_dues: Decimal = Decimal("0")
    was_late_payment: bool = False
    receipt: str = ""
    member_name: str = ""
    member_id: Optional[str] = None
    previous_due: Optional[Decimal] = None
    remaining_due: Optional[Decimal] = None
    gateway_payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None

    @property
    def is_late(self) -> bool:
        return self.was_late_payment or self.late_fee_added_to_dues > 0


@dataclass(frozen=True)
class PaymentQuote:
    """What a member owes right now.

    ``max_payable`` is the ceiling a payment form may offer as "pay in full".
    """

    pending: Decimal
    late_fee: Decimal
    max_payable: Decimal
    period: str
    is_late: bool


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of splitting a payment across dues and the late fee.

    ``new_pending``, ``new_paid_total`` and ``new_late_fee_assessed_period``
    are the values the caller persists on the member account.
    """

    new_pending: Decimal
    new_paid_total: Decimal
    new_late_fee_assessed_period: Optional[str]
    late_fee_applied: bool
    dues_settled: Decimal
    fee_settled: Decimal
    late_fee: Decimal
    was_late: bool
