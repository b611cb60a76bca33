"""Command-line interface for the society dues engine.

This module uses the ``click`` library to implement a multi-command
interface for treasurers: configure charges, add members, quote and record
payments, look at the dashboard and the reminder list, and browse or export
the payment ledger. State lives in the database named by ``--database`` (or
the ``DUES_DATABASE_URL`` environment variable).
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal
from functools import wraps
from pathlib import Path
from typing import Optional

import click

from .data_models import BillingConfig, PaymentMethod
from .engine import validate_amount
from .errors import DuesError
from .formatter import (
    print_config,
    print_members,
    print_outcome,
    print_payments,
    print_quote,
    print_reminders,
    print_summary,
)
from .reports import export_to_csv, filter_payments, payment_totals
from .service import PaymentService, create_service
from .store import create_store_from_env
from .utils import decimal_from_str, parse_iso_date

logger = logging.getLogger(__name__)


def parse_amount(value: str) -> Decimal:
    """Parse a numeric string with optional suffixes.

    Accepts plain numbers ("1300") and shorthand with a ``k`` suffix
    (e.g., "1.5k" meaning 1_500). Returns a Decimal.
    """
    value = value.strip().lower()
    value = value.replace(",", "")
    factor = Decimal(1)
    if value.endswith("k"):
        factor = Decimal(1_000)
        value = value[:-1]
    try:
        return decimal_from_str(value) * factor
    except ValueError:
        raise click.BadParameter(f"Invalid amount: {value}")


def parse_moment(value: Optional[str]) -> Optional[datetime]:
    """Parse ``--on`` values: ``YYYY-MM-DD`` or a full ISO timestamp."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        raise click.BadParameter(f"Invalid date: {value}; use YYYY-MM-DD")


def parse_day(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    parsed = parse_iso_date(value)
    if parsed is None:
        raise click.BadParameter(f"Invalid date: {value}; use YYYY-MM-DD")
    return parsed


def dues_errors(func):
    """Report engine and validation errors as CLI errors instead of tracebacks."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (DuesError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


pass_service = click.make_pass_decorator(PaymentService)


@click.group()
@click.option(
    "--database",
    "database",
    envvar="DUES_DATABASE_URL",
    help="SQLAlchemy database URL (default: sqlite:///society_dues.sqlite3)",
)
@click.option(
    "--log-level",
    "log_level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    help="Logging verbosity",
)
@click.pass_context
def cli(ctx: click.Context, database: Optional[str], log_level: str) -> None:
    """Society maintenance dues: quotes, payments and reminders."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = create_service(create_store_from_env(database))


@cli.group()
def config() -> None:
    """Show or change the billing configuration."""


@config.command("show")
@pass_service
def config_show(service: PaymentService) -> None:
    """Print the billing configuration."""
    print_config(service.configs.get_config(), service.engine.next_due_date())


@config.command("set")
@click.option("--maintenance", "maintenance", help="Maintenance charge")
@click.option("--water", "water", help="Water charge")
@click.option("--sinking", "sinking", help="Sinking fund contribution")
@click.option("--due-date", "due_date", help="Due date (YYYY-MM-DD); its day is the monthly due day")
@click.option("--late-fee", "late_fee", help="Flat late fee charged once per month")
@click.option("--contact-email", "contact_email", help="Society contact email")
@pass_service
@dues_errors
def config_set(
    service: PaymentService,
    maintenance: Optional[str],
    water: Optional[str],
    sinking: Optional[str],
    due_date: Optional[str],
    late_fee: Optional[str],
    contact_email: Optional[str],
) -> None:
    """Update the billing configuration; options left out keep their value."""
    current = service.configs.get_config() or BillingConfig()
    updated = current
    if maintenance is not None:
        updated = replace(updated, maintenance_charge=parse_amount(maintenance))
    if water is not None:
        updated = replace(updated, water_charge=parse_amount(water))
    if sinking is not None:
        updated = replace(updated, sinking_fund=parse_amount(sinking))
    if late_fee is not None:
        updated = replace(updated, late_fee=parse_amount(late_fee))
    if due_date is not None:
        day = parse_day(due_date)
        # Keep the bare day number for readers that only know the old field.
        updated = replace(updated, due_date_iso=day.isoformat(), due_date=str(day.day))
    if contact_email is not None:
        updated = replace(updated, contact_email=contact_email.strip())
    service.save_config(updated)
    click.echo("Configuration saved.")
    print_config(updated, service.engine.next_due_date())


@cli.group()
def member() -> None:
    """Add, list and edit members."""


@member.command("add")
@click.option("--name", "name", required=True, help="Member's full name")
@click.option("--email", "email", default="", help="Member's email address")
@click.option("--flat", "flat", required=True, help="Flat number")
@click.option("--dues", "dues", default="0", help="Opening dues (0 = current recurring charge)")
@pass_service
@dues_errors
def member_add(service: PaymentService, name: str, email: str, flat: str, dues: str) -> None:
    """Create a member account."""
    account = service.create_member(name, email, flat, parse_amount(dues))
    click.echo(f"Member {account.id} created with dues {account.dues_override:.2f}")


@member.command("list")
@click.option("--on", "on", help="Evaluate as of this date (YYYY-MM-DD)")
@click.option("--pending-only", is_flag=True, help="Only members who have not paid this cycle")
@pass_service
def member_list(service: PaymentService, on: Optional[str], pending_only: bool) -> None:
    """List members with this cycle's status."""
    now = parse_moment(on) or service.engine.now()
    payments = service.payments()
    rows = []
    for account in service.profiles.list_members():
        paid = service.engine.has_paid(account, payments, now)
        if pending_only and paid:
            continue
        rows.append((account, service.engine.pending(account, payments, now), paid))
    print_members(rows)


@member.command("edit")
@click.argument("member_id")
@click.option("--dues", "dues", help="New dues balance")
@click.option("--paid", "paid", help="New lifetime paid total")
@pass_service
@dues_errors
def member_edit(service: PaymentService, member_id: str, dues: Optional[str], paid: Optional[str]) -> None:
    """Manually correct a member's dues or paid total."""
    if dues is None and paid is None:
        raise click.UsageError("Nothing to change; pass --dues and/or --paid")
    account = service.adjust_member(
        member_id,
        dues=parse_amount(dues) if dues is not None else None,
        paid=parse_amount(paid) if paid is not None else None,
    )
    click.echo(f"Member {account.id}: dues {account.dues_override:.2f}, paid {account.paid_total:.2f}")


@cli.command()
@click.argument("member_id")
@click.option("--on", "on", help="Quote as of this date (YYYY-MM-DD)")
@pass_service
@dues_errors
def quote(service: PaymentService, member_id: str, on: Optional[str]) -> None:
    """Show what a member owes, including any late fee."""
    now = parse_moment(on)
    print_quote(service.member(member_id), service.quote(member_id, now))


@cli.command()
@click.argument("member_id")
@click.option("--amount", "amount", help="Amount paid (defaults to the full payable amount)")
@click.option(
    "--method",
    "method",
    type=click.Choice([m.name for m in PaymentMethod], case_sensitive=False),
    default="CASH",
    help="Payment method",
)
@click.option("--on", "on", help="Payment date (YYYY-MM-DD)")
@pass_service
@dues_errors
def pay(service: PaymentService, member_id: str, amount: Optional[str], method: str, on: Optional[str]) -> None:
    """Record a payment for a member."""
    now = parse_moment(on)
    current = service.quote(member_id, now)
    tendered = validate_amount(parse_amount(amount)) if amount else current.max_payable
    if tendered > current.max_payable:
        raise click.BadParameter(
            f"Amount {tendered:.2f} exceeds the payable amount {current.max_payable:.2f}", param_hint="--amount"
        )
    outcome = service.record_payment(member_id, tendered, PaymentMethod[method.upper()], now=now)
    print_outcome(outcome)


@cli.command()
@click.option("--on", "on", help="Evaluate as of this date (YYYY-MM-DD)")
@pass_service
def dashboard(service: PaymentService, on: Optional[str]) -> None:
    """Print society-wide totals."""
    print_summary(service.dashboard(parse_moment(on)))


@cli.command()
@click.option("--on", "on", help="Evaluate as of this date (YYYY-MM-DD)")
@pass_service
def reminders(service: PaymentService, on: Optional[str]) -> None:
    """List members who should get a payment reminder."""
    print_reminders(service.reminders(parse_moment(on)))


@cli.command()
@click.option("--search", "search", default="", help="Match member, flat, email or receipt")
@click.option("--from", "date_from", help="First day to include (YYYY-MM-DD)")
@click.option("--to", "date_to", help="Last day to include (YYYY-MM-DD)")
@click.option("--output", "output", type=str, help="Export to this .csv file instead of printing")
@pass_service
def payments(
    service: PaymentService, search: str, date_from: Optional[str], date_to: Optional[str], output: Optional[str]
) -> None:
    """Browse or export the payment ledger."""
    records = filter_payments(service.payments(), search, parse_day(date_from), parse_day(date_to))
    if output:
        path = Path(output)
        if path.suffix.lower() != ".csv":
            raise click.BadParameter("Unsupported output format; use .csv")
        export_to_csv(path, records)
        click.echo(f"{len(records)} payments exported to {path}")
        return
    print_payments(records)
    count, total = payment_totals(records)
    click.echo(f"{count} payments, total {total:,.2f}")


if __name__ == "__main__":
    cli()
