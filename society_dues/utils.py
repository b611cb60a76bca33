"""Utility functions for the dues engine.

This module provides helpers for turning stored values into Python data types
and for handling billing periods: formatting ``YYYY-MM`` period keys, parsing
the day-first date strings written by older clients, converting epoch
milliseconds to dates and clamping a day-of-month to the length of a month.
"""

from __future__ import annotations

import calendar
import random
from datetime import date, datetime, tzinfo
from decimal import Decimal, InvalidOperation, getcontext
from typing import Optional, Union

getcontext().prec = 28  # increase decimal precision to avoid rounding errors

Number = Union[Decimal, int, float, str]

MINOR_UNIT = Decimal("0.01")


def period_key(dt: date) -> str:
    """Return the billing period of ``dt`` as ``"YYYY-MM"``."""
    return f"{dt.year:04d}-{dt.month:02d}"


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def clamp_day(year: int, month: int, day: int) -> date:
    """Return ``date(year, month, day)`` with ``day`` clamped to the month.

    A due day of 31 falls on the 30th in April and on the 28th (or 29th) in
    February.
    """
    return date(year, month, min(day, days_in_month(year, month)))


def parse_day_first_date(value: str) -> Optional[date]:
    """Parse a ``DD/MM/YYYY`` string as written by the member dashboard.

    Returns ``None`` when the string does not have three parts or does not
    name a real calendar day. Other formats are not guessed at.
    """
    parts = str(value).strip().split("/")
    if len(parts) != 3:
        return None
    try:
        day, month, year = (int(p) for p in parts)
        return date(year, month, day)
    except ValueError:
        return None


def parse_iso_date(value: str) -> Optional[date]:
    """Parse the date part of an ISO string (``YYYY-MM-DD[T...]``)."""
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def date_from_epoch_ms(ms: Union[int, float], tz: Optional[tzinfo] = None) -> date:
    """Convert epoch milliseconds into a calendar date.

    With ``tz`` set the date is taken in that zone, otherwise in local time.
    """
    return datetime.fromtimestamp(ms / 1000, tz=tz).date()


def epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def decimal_from_str(value: Number) -> Decimal:
    """Convert a numeric string (or number) into a ``Decimal``.

    The function strips any commas and handles both integer and float-like
    strings. It raises ``ValueError`` if conversion fails.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Invalid numeric value: {value}")
    try:
        cleaned = str(value).replace(",", "").strip()
        return Decimal(cleaned)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric value: {value}") from exc


def to_decimal(value: Optional[Number], default: str = "0") -> Decimal:
    """Lenient conversion used for stored fields: missing or blank becomes ``default``."""
    if value is None or value == "":
        return Decimal(default)
    return decimal_from_str(value)


def is_whole_paise(value: Decimal) -> bool:
    """Return True when ``value`` has no fraction finer than one paisa."""
    return value == value.quantize(MINOR_UNIT)


def check_money(value: Number, label: str = "Amount") -> Decimal:
    """Return ``value`` as a Decimal fit to store as a balance or charge.

    Raises ``ValueError`` for non-finite or negative values and for values
    with more than two decimal places.
    """
    amount = decimal_from_str(value)
    if not amount.is_finite() or amount < 0:
        raise ValueError(f"{label} must be a non-negative number; got {value}")
    if not is_whole_paise(amount):
        raise ValueError(f"{label} has more than two decimal places: {value}")
    return amount


def make_receipt_id(now: Optional[datetime] = None) -> str:
    """Return a receipt number of the form ``RCPT-<epoch ms>-<4 digits>``."""
    now = now or datetime.now()
    return f"RCPT-{epoch_ms(now)}-{random.randint(1000, 9999)}"
