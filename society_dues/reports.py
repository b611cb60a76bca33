"""Ledger views: filtering, totals and CSV export of payment records."""

from __future__ import annotations

import csv
from datetime import date, datetime, time
from decimal import Decimal
from pathlib import Path
from typing import IO, Iterable, List, Optional, Tuple, Union

from .data_models import PaymentRecord
from .utils import epoch_ms, parse_day_first_date

CSV_HEADER = ["Date", "Member", "Flat", "Email", "Amount", "Method", "Receipt"]


def record_timestamp(record: PaymentRecord) -> Optional[int]:
    """Epoch milliseconds of a record, falling back on its date string (local midnight)."""
    if record.occurred_at is not None:
        return record.occurred_at
    parsed = parse_day_first_date(record.occurred_date_string or "")
    if parsed is None:
        return None
    return epoch_ms(datetime.combine(parsed, time.min))


def filter_payments(
    payments: Iterable[PaymentRecord],
    search: str = "",
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[PaymentRecord]:
    """Return matching payments, newest first.

    ``search`` is matched case-insensitively against member name, flat,
    email and receipt number. ``date_from`` and ``date_to`` are inclusive
    whole days; records without any usable date are dropped once a range is
    given.
    """
    query = search.strip().lower()
    from_ms = epoch_ms(datetime.combine(date_from, time.min)) if date_from else None
    to_ms = epoch_ms(datetime.combine(date_to, time.max)) if date_to else None

    result = []
    for record in payments:
        text = f"{record.member_name} {record.flat} {record.email} {record.receipt}".lower()
        if query and query not in text:
            continue
        ts = record_timestamp(record)
        if (from_ms is not None or to_ms is not None) and ts is None:
            continue
        if from_ms is not None and ts < from_ms:
            continue
        if to_ms is not None and ts > to_ms:
            continue
        result.append(record)
    result.sort(key=lambda r: record_timestamp(r) or 0, reverse=True)
    return result


def payment_totals(payments: Iterable[PaymentRecord]) -> Tuple[int, Decimal]:
    """Return the number of payments and their summed amount."""
    count = 0
    amount = Decimal("0")
    for record in payments:
        count += 1
        amount += record.amount
    return count, amount


def _display_date(record: PaymentRecord) -> str:
    if record.occurred_date_string:
        return record.occurred_date_string
    if record.occurred_at is not None:
        return datetime.fromtimestamp(record.occurred_at / 1000).strftime("%d/%m/%Y")
    return ""


def write_csv(stream: IO[str], payments: Iterable[PaymentRecord]) -> None:
    writer = csv.writer(stream)
    writer.writerow(CSV_HEADER)
    for record in payments:
        writer.writerow(
            [
                _display_date(record),
                record.member_name,
                record.flat,
                record.email,
                f"{record.amount:.2f}",
                record.method.value,
                record.receipt,
            ]
        )


def export_to_csv(path: Union[str, Path], payments: Iterable[PaymentRecord]) -> None:
    """Export payments to a CSV file."""
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as f:
        write_csv(f, payments)
