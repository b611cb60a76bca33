"""Core calculation engine for society dues.

This module decides whether a member has paid for the current billing cycle,
how much they owe, whether a late fee applies and how an incoming payment is
split between outstanding dues and a newly assessed late fee. Every function
is a pure function of its arguments: members, the billing configuration and
the payment history are passed in as plain snapshots and nothing is cached,
persisted or logged here. Persisting the results is the caller's job (see
``society_dues.service``).

A billing cycle (or period) is one calendar month, identified as
``"YYYY-MM"``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple

from .data_models import AllocationResult, BillingConfig, MemberAccount, PaymentQuote, PaymentRecord
from .errors import InvalidAmount, NoConfig
from .utils import (
    Number,
    clamp_day,
    date_from_epoch_ms,
    decimal_from_str,
    is_whole_paise,
    parse_day_first_date,
    parse_iso_date,
    period_key,
)

ZERO = Decimal("0")

# Returns the current billing configuration, or None when none was saved.
ConfigProvider = Callable[[], Optional[BillingConfig]]


def _norm(value: Optional[str]) -> str:
    return str(value or "").strip()


def payment_matches_member(payment: PaymentRecord, member: MemberAccount) -> bool:
    """Return True when ``payment`` belongs to ``member``.

    Emails win: when both sides carry one they are compared case-insensitively
    and a mismatch rules the record out even if the flats agree. Flats are
    only compared when either side lacks an email. With neither key on both
    sides the record cannot be attributed and does not match.
    """
    payment_email = _norm(payment.email).lower()
    member_email = _norm(member.email).lower()
    if payment_email and member_email:
        return payment_email == member_email
    payment_flat = _norm(payment.flat)
    member_flat = _norm(member.flat)
    if payment_flat and member_flat:
        return payment_flat == member_flat
    return False


def payment_date(payment: PaymentRecord, now: Optional[datetime] = None) -> Optional[date]:
    """Return the calendar date a payment belongs to, or None if unknown.

    ``occurred_at`` is used when it is numeric; the date string is parsed as
    ``DD/MM/YYYY`` otherwise. Timestamps are read in ``now``'s time zone when
    ``now`` is aware, and in local time otherwise.
    """
    occurred_at = payment.occurred_at
    if isinstance(occurred_at, (int, float)) and not isinstance(occurred_at, bool):
        tz = now.tzinfo if now is not None else None
        return date_from_epoch_ms(occurred_at, tz)
    if payment.occurred_date_string:
        return parse_day_first_date(payment.occurred_date_string)
    return None


def has_paid_current_cycle(member: MemberAccount, payments: Iterable[PaymentRecord], now: datetime) -> bool:
    """Return True iff a matching payment falls in ``now``'s month."""
    for payment in payments:
        if not payment_matches_member(payment, member):
            continue
        paid_on = payment_date(payment, now)
        if paid_on is None:
            continue
        if paid_on.year == now.year and paid_on.month == now.month:
            return True
    return False


def compute_pending(
    member: MemberAccount,
    config: Optional[BillingConfig],
    payments: Iterable[PaymentRecord],
    now: datetime,
) -> Decimal:
    """Return the amount the member owes for the current cycle.

    This is the recurring charge from the configuration unless the member
    has already paid this month. The persisted ``dues_override`` is not
    consulted; without a configuration nothing can be charged and the result
    is zero.
    """
    if config is None:
        return ZERO
    if has_paid_current_cycle(member, payments, now):
        return ZERO
    return config.recurring_charge


def due_day(config: Optional[BillingConfig]) -> Optional[int]:
    """Return the configured day-of-month payments are due, if valid.

    ``due_date_iso`` takes precedence; the legacy bare ``due_date`` number is
    the fallback. Values outside 1..31 are treated as unset.
    """
    if config is None:
        return None
    day: Optional[int] = None
    parsed = parse_iso_date(config.due_date_iso)
    if parsed is not None:
        day = parsed.day
    elif config.due_date not in (None, ""):
        day = _legacy_due_day(config.due_date)
    if day is None or not 1 <= day <= 31:
        return None
    return day


def _legacy_due_day(value) -> Optional[int]:
    # Older clients stored the day as a number, so "25" and "25.0" both occur.
    try:
        number = decimal_from_str(value)
    except ValueError:
        return None
    if not number.is_finite() or number != number.to_integral_value():
        return None
    return int(number)


def is_late(config: Optional[BillingConfig], now: datetime) -> bool:
    """Return True when ``now`` is past this month's due date.

    The due day is clamped to the length of the month, so a due day of 31
    means the 30th in April and no day of that month counts as late.
    """
    day = due_day(config)
    if day is None:
        return False
    return now.day > clamp_day(now.year, now.month, day).day


def next_due_date(config: Optional[BillingConfig], now: datetime) -> Optional[date]:
    """Return the next due date on or after ``now``.

    That is this month's due date while it has not passed, and next month's
    otherwise.
    """
    day = due_day(config)
    if day is None:
        return None
    this_month = clamp_day(now.year, now.month, day)
    if now.day <= this_month.day:
        return this_month
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return clamp_day(year, month, day)


def _quote_pending(member: MemberAccount, config: BillingConfig) -> Decimal:
    # A positive persisted balance is a running balance from earlier partial
    # payments or manual edits; a member who never paid owes the recurring
    # charge.
    if member.dues_override > 0:
        return member.dues_override
    if member.paid_total == 0:
        return max(ZERO, config.recurring_charge)
    return ZERO


def quote_payment(
    member: MemberAccount,
    config: Optional[BillingConfig],
    payments: Iterable[PaymentRecord],
    now: datetime,
) -> PaymentQuote:
    """Return what the member should be asked to pay now.

    Parameters
    ----------
    member: MemberAccount
        The member's current account snapshot.
    config: BillingConfig
        The billing configuration. ``NoConfig`` is raised when it is None.
    payments: Iterable[PaymentRecord]
        The payment history. Accepted for symmetry with the other entry
        points; the quote is driven by the member's tracked balance.
    now: datetime
        The moment of quoting; its month is the billing period.

    Returns
    -------
    PaymentQuote
        ``late_fee`` is non-zero only when the due date has passed, a fee is
        configured, something is pending and no fee was assessed for this
        period yet. Quoting repeatedly within a period after the fee was
        assessed never charges it again.
    """
    if config is None:
        raise NoConfig()
    pending = _quote_pending(member, config)
    period = period_key(now)
    late = is_late(config, now)
    late_fee = ZERO
    if late and config.late_fee > 0 and pending > 0 and member.late_fee_assessed_period != period:
        late_fee = config.late_fee
    return PaymentQuote(
        pending=pending,
        late_fee=late_fee,
        max_payable=pending + late_fee,
        period=period,
        is_late=late,
    )


def validate_amount(amount: Number) -> Decimal:
    """Return ``amount`` as a Decimal, raising ``InvalidAmount`` unless finite, positive and in whole paise."""
    try:
        value = decimal_from_str(amount)
    except ValueError as exc:
        raise InvalidAmount(f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(f"Amount must be a positive number; got {amount}")
    if not is_whole_paise(value):
        raise InvalidAmount(f"Amount has more than two decimal places; got {amount}")
    return value


def allocate_payment(
    member: MemberAccount,
    config: Optional[BillingConfig],
    payments: Iterable[PaymentRecord],
    now: datetime,
    amount: Number,
) -> AllocationResult:
    """Split a tendered amount across pending dues and the late fee.

    Dues are settled first and the late fee only from what is left. The
    amount is not capped here; callers limit it to the quote's
    ``max_payable`` before calling. When a late fee is assessed the period
    is recorded on the account even if the fee is only partly paid, since
    the unpaid part stays in ``new_pending``.

    Raises ``InvalidAmount`` for non-positive or non-finite amounts and
    ``NoConfig`` when there is no configuration.
    """
    tendered = validate_amount(amount)
    quote = quote_payment(member, config, payments, now)

    dues_settled = min(quote.pending, tendered)
    remaining_after_dues = max(ZERO, tendered - quote.pending)
    fee_settled = min(quote.late_fee, remaining_after_dues)
    new_pending = (quote.pending - dues_settled) + (quote.late_fee - fee_settled)

    fee_applied = quote.late_fee > 0
    return AllocationResult(
        new_pending=new_pending,
        new_paid_total=member.paid_total + tendered,
        new_late_fee_assessed_period=quote.period if fee_applied else member.late_fee_assessed_period,
        late_fee_applied=fee_applied,
        dues_settled=dues_settled,
        fee_settled=fee_settled,
        late_fee=quote.late_fee,
        was_late=quote.is_late,
    )


@dataclass(frozen=True)
class DuesSummary:
    """Society-wide totals shown on the admin dashboard."""

    total_members: int
    total_collected: Decimal
    total_outstanding: Decimal
    paid_this_cycle: int


def summarize_dues(
    members: Iterable[MemberAccount],
    config: Optional[BillingConfig],
    payments: Iterable[PaymentRecord],
    now: datetime,
) -> DuesSummary:
    """Return member count, lifetime collections and this cycle's outstanding total."""
    payment_list = list(payments)
    total_members = 0
    collected = ZERO
    outstanding = ZERO
    paid = 0
    for member in members:
        total_members += 1
        collected += member.paid_total
        if has_paid_current_cycle(member, payment_list, now):
            paid += 1
        else:
            outstanding += compute_pending(member, config, payment_list, now)
    return DuesSummary(
        total_members=total_members,
        total_collected=collected,
        total_outstanding=outstanding,
        paid_this_cycle=paid,
    )


def pending_members(
    members: Iterable[MemberAccount],
    config: Optional[BillingConfig],
    payments: Iterable[PaymentRecord],
    now: datetime,
) -> List[Tuple[MemberAccount, Decimal]]:
    """Return the members a reminder should go to, with the amount each owes.

    Only members with an email address and something pending this cycle are
    included.
    """
    payment_list = list(payments)
    result: List[Tuple[MemberAccount, Decimal]] = []
    for member in members:
        if not _norm(member.email):
            continue
        pending = compute_pending(member, config, payment_list, now)
        if pending > 0:
            result.append((member, pending))
    return result


class DuesEngine:
    """The engine's operations bound to a configuration provider and a clock.

    Call sites that hold a store use this instead of fetching the
    configuration themselves. Each call reads a fresh configuration.
    """

    def __init__(self, config_provider: ConfigProvider, clock: Callable[[], datetime] = datetime.now) -> None:
        self._config_provider = config_provider
        self._clock = clock

    @property
    def config(self) -> Optional[BillingConfig]:
        return self._config_provider()

    def now(self) -> datetime:
        return self._clock()

    def has_paid(self, member: MemberAccount, payments: Iterable[PaymentRecord], now: Optional[datetime] = None) -> bool:
        return has_paid_current_cycle(member, payments, now or self.now())

    def pending(self, member: MemberAccount, payments: Iterable[PaymentRecord], now: Optional[datetime] = None) -> Decimal:
        return compute_pending(member, self.config, payments, now or self.now())

    def is_late(self, now: Optional[datetime] = None) -> bool:
        return is_late(self.config, now or self.now())

    def next_due_date(self, now: Optional[datetime] = None) -> Optional[date]:
        return next_due_date(self.config, now or self.now())

    def quote(self, member: MemberAccount, payments: Iterable[PaymentRecord], now: Optional[datetime] = None) -> PaymentQuote:
        return quote_payment(member, self.config, payments, now or self.now())

    def allocate(
        self,
        member: MemberAccount,
        payments: Iterable[PaymentRecord],
        amount: Number,
        now: Optional[datetime] = None,
    ) -> AllocationResult:
        return allocate_payment(member, self.config, payments, now or self.now(), amount)

    def summarize(
        self, members: Iterable[MemberAccount], payments: Iterable[PaymentRecord], now: Optional[datetime] = None
    ) -> DuesSummary:
        return summarize_dues(members, self.config, payments, now or self.now())

    def reminders(
        self, members: Iterable[MemberAccount], payments: Iterable[PaymentRecord], now: Optional[datetime] = None
    ) -> List[Tuple[MemberAccount, Decimal]]:
        return pending_members(members, self.config, payments, now or self.now())
