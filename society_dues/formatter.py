"""Output helpers for the dues CLI.

This module renders quotes, allocations, member lists, dashboard totals and
the payment ledger as plain text tables. We rely only on built-in printing
and string formatting.
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from .data_models import BillingConfig, MemberAccount, PaymentQuote, PaymentRecord
from .engine import DuesSummary
from .service import PaymentOutcome


def _money(value: Decimal) -> str:
    return f"{value:,.2f}"


def print_config(config: Optional[BillingConfig], next_due: Optional[date] = None) -> None:
    print("Billing configuration")
    print("-" * 72)
    if config is None:
        print("Not configured.")
        print("-" * 72)
        return
    print(f"Maintenance charge : {_money(config.maintenance_charge)}")
    print(f"Water charge       : {_money(config.water_charge)}")
    print(f"Sinking fund       : {_money(config.sinking_fund)}")
    print(f"Recurring charge   : {_money(config.recurring_charge)}")
    print(f"Late fee           : {_money(config.late_fee)}")
    print(f"Due date           : {config.due_date_iso or config.due_date or '-'}")
    if next_due:
        print(f"Next due date      : {next_due.isoformat()}")
    if config.contact_email:
        print(f"Contact email      : {config.contact_email}")
    print("-" * 72)


def print_quote(member: MemberAccount, quote: PaymentQuote) -> None:
    """Print what a member owes for the current period."""
    print(f"Quote for {member.name or member.id} ({quote.period})")
    print("-" * 72)
    print(f"Pending dues       : {_money(quote.pending)}")
    # Only mention the fee when one is being charged now.
    if quote.late_fee:
        print(f"Late fee           : {_money(quote.late_fee)}")
    print(f"Payable in full    : {_money(quote.max_payable)}")
    print(f"Past due date      : {'Yes' if quote.is_late else 'No'}")
    print("-" * 72)


def print_outcome(outcome: PaymentOutcome) -> None:
    record = outcome.record
    allocation = outcome.allocation
    print(f"Payment recorded   : {record.receipt}")
    print(f"Amount             : {_money(record.amount)} ({record.method.value})")
    print(f"Applied to dues    : {_money(allocation.dues_settled)}")
    if allocation.late_fee_applied:
        print(f"Late fee assessed  : {_money(allocation.late_fee)}")
        print(f"Applied to fee     : {_money(allocation.fee_settled)}")
    print(f"Remaining due      : {_money(allocation.new_pending)}")
    print(f"Total paid to date : {_money(allocation.new_paid_total)}")


def print_members(rows: Iterable[Tuple[MemberAccount, Decimal, bool]]) -> None:
    """Print members with their pending amount and whether they paid this cycle."""
    headers = ["Id", "Name", "Flat", "Email", "Pending", "Paid", "Status"]
    print("\t".join(headers))
    for member, pending, paid_this_cycle in rows:
        row = [
            member.id,
            member.name or "N/A",
            member.flat or "N/A",
            member.email or "N/A",
            _money(pending),
            _money(member.paid_total),
            "Paid" if paid_this_cycle else "Pending",
        ]
        print("\t".join(row))


def print_summary(summary: DuesSummary) -> None:
    print("Dashboard")
    print("-" * 72)
    print(f"Members            : {summary.total_members}")
    print(f"Paid this cycle    : {summary.paid_this_cycle}")
    print(f"Total collected    : {_money(summary.total_collected)}")
    print(f"Outstanding dues   : {_money(summary.total_outstanding)}")
    print("-" * 72)


def print_reminders(pending: List[Tuple[MemberAccount, Decimal]]) -> None:
    if not pending:
        print("No pending payments for this month. All members have paid.")
        return
    for member, amount in pending:
        print(f"{member.email}\t{member.name or 'Member'}\tFlat {member.flat or 'N/A'}\t{_money(amount)}")


def print_payments(payments: Iterable[PaymentRecord]) -> None:
    """Print the payment ledger as a simple table."""
    headers = ["Date", "Member", "Flat", "Amount", "Method", "Receipt", "Late"]
    print("\t".join(headers))
    for record in payments:
        row = [
            record.occurred_date_string or "",
            record.member_name or "N/A",
            record.flat or "N/A",
            _money(record.amount),
            record.method.value,
            record.receipt,
            "Yes" if record.is_late else "No",
        ]
        print("\t".join(row))
