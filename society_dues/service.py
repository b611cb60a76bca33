"""Payment service: the engine wired to its stores.

``PaymentService`` is what the CLI and the web API call. It reads fresh
snapshots from the stores, asks the engine for a quote or an allocation and
then performs the writes the engine leaves to its caller:

1. merge the new ``dues``/``paid``/``lateFeeAssessedOn`` values into the
   member's account,
2. append an immutable payment record to the ledger,
3. update the legacy mirror record, if one exists.

Steps 1 and 2 are the payment; step 3 is best effort and its failure is only
logged. There is no transaction spanning the mirror, so a crash between the
steps leaves the mirror stale until the next payment.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, Union

from .data_models import AllocationResult, BillingConfig, MemberAccount, PaymentMethod, PaymentQuote, PaymentRecord
from .engine import DuesEngine, DuesSummary
from .errors import DuplicatePayment, MemberNotFound
from .store import ConfigStore, MirrorStore, PaymentLedger, ProfileStore
from .utils import Number, check_money, epoch_ms, make_receipt_id, to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    """Everything a caller needs after a payment was recorded."""

    member: MemberAccount
    record: PaymentRecord
    allocation: AllocationResult
    mirrored: bool


class PaymentService:
    def __init__(
        self,
        profiles: ProfileStore,
        configs: ConfigStore,
        ledger: PaymentLedger,
        mirror: Optional[MirrorStore] = None,
        clock: Callable[[], datetime] = datetime.now,
        receipt_factory: Callable[[datetime], str] = make_receipt_id,
    ) -> None:
        self.profiles = profiles
        self.configs = configs
        self.ledger = ledger
        self.mirror = mirror
        self.engine = DuesEngine(configs.get_config, clock)
        self._receipt_factory = receipt_factory

    def member(self, member_id: str) -> MemberAccount:
        member = self.profiles.get_member(member_id)
        if member is None:
            raise MemberNotFound(f"No member with id {member_id}")
        return member

    def create_member(self, name: str, email: str, flat: str, dues: Number = 0) -> MemberAccount:
        """Create a member account.

        A member created without opening dues starts with the configured
        recurring charge, when a configuration exists.
        """
        opening = check_money(to_decimal(dues), "Dues")
        config = self.configs.get_config()
        if opening == 0 and config is not None:
            opening = config.recurring_charge
        member = MemberAccount(
            id="",
            name=name.strip(),
            email=email.strip(),
            flat=flat.strip(),
            dues_override=opening,
        )
        return self.profiles.add_member(member)

    def save_config(self, config: BillingConfig) -> None:
        """Store a new billing configuration.

        Every charge must be a non-negative amount in whole paise.
        """
        check_money(config.maintenance_charge, "Maintenance charge")
        check_money(config.water_charge, "Water charge")
        check_money(config.sinking_fund, "Sinking fund")
        check_money(config.late_fee, "Late fee")
        self.configs.save_config(config)

    def quote(self, member_id: str, now: Optional[datetime] = None) -> PaymentQuote:
        member = self.member(member_id)
        return self.engine.quote(member, self.ledger.list_payments(), now)

    def pending(self, member_id: str, now: Optional[datetime] = None) -> Decimal:
        member = self.member(member_id)
        return self.engine.pending(member, self.ledger.list_payments(), now)

    def check_new_gateway_payment(self, gateway_payment_id: str) -> None:
        """Raise ``DuplicatePayment`` if the gateway payment is already in the ledger."""
        if self.ledger.find_gateway_payment(gateway_payment_id) is not None:
            raise DuplicatePayment(f"Gateway payment {gateway_payment_id} is already recorded")

    def record_payment(
        self,
        member_id: str,
        amount: Number,
        method: Union[PaymentMethod, str],
        *,
        now: Optional[datetime] = None,
        gateway_payment_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> PaymentOutcome:
        """Allocate ``amount`` for the member and persist the result.

        The amount is trusted as given; forms cap it at the quote's
        ``max_payable`` before submitting. ``InvalidAmount``, ``NoConfig``,
        ``MemberNotFound``, ``DuplicatePayment`` and an unknown ``method``
        propagate before anything is written.
        """
        now = now or self.engine.now()
        method = PaymentMethod.parse(method)
        member = self.member(member_id)
        if gateway_payment_id:
            self.check_new_gateway_payment(gateway_payment_id)
        payments = self.ledger.list_payments()
        quote = self.engine.quote(member, payments, now)
        allocation = self.engine.allocate(member, payments, amount, now)
        tendered = allocation.new_paid_total - member.paid_total
        record = PaymentRecord(
            member_ref=member.email or member.flat,
            amount=tendered,
            method=method,
            email=member.email,
            flat=member.flat,
            occurred_at=epoch_ms(now),
            occurred_date_string=now.strftime("%d/%m/%Y"),
            late_fee_added_to_dues=allocation.late_fee,
            was_late_payment=allocation.was_late,
            receipt=self._receipt_factory(now),
            member_name=member.name,
            member_id=member.id,
            previous_due=quote.max_payable,
            remaining_due=allocation.new_pending,
            gateway_payment_id=gateway_payment_id,
            gateway_order_id=gateway_order_id,
        )

        updated = self.profiles.update_member(
            member.id,
            dues=allocation.new_pending,
            paid=allocation.new_paid_total,
            late_fee_assessed_on=allocation.new_late_fee_assessed_period,
        )
        self.ledger.append_payment(record)
        logger.info(
            "Recorded %s payment of %s for member %s (receipt %s, remaining %s)",
            record.method.value,
            tendered,
            member.id,
            record.receipt,
            allocation.new_pending,
        )
        mirrored = self._update_mirror(updated, tendered, allocation.new_pending)
        return PaymentOutcome(member=updated, record=record, allocation=allocation, mirrored=mirrored)

    def _update_mirror(self, member: MemberAccount, amount: Decimal, new_pending: Decimal) -> bool:
        if self.mirror is None:
            return False
        try:
            return self.mirror.apply_to_mirror(member, amount, new_pending)
        except Exception:
            logger.warning("Failed to update mirror record for member %s after payment", member.id, exc_info=True)
            return False

    def adjust_member(self, member_id: str, *, dues: Optional[Number] = None, paid: Optional[Number] = None) -> MemberAccount:
        """Apply a manual admin edit to a member's dues and/or paid total."""
        member = self.member(member_id)
        changed = replace(
            member,
            dues_override=member.dues_override if dues is None else check_money(to_decimal(dues), "Dues"),
            paid_total=member.paid_total if paid is None else check_money(to_decimal(paid), "Paid amount"),
        )
        logger.info("Manual edit for member %s: dues=%s paid=%s", member_id, changed.dues_override, changed.paid_total)
        return self.profiles.update_member(
            member_id,
            dues=changed.dues_override,
            paid=changed.paid_total,
            late_fee_assessed_on=member.late_fee_assessed_period,
        )

    def dashboard(self, now: Optional[datetime] = None) -> DuesSummary:
        return self.engine.summarize(self.profiles.list_members(), self.ledger.list_payments(), now)

    def reminders(self, now: Optional[datetime] = None) -> List[Tuple[MemberAccount, Decimal]]:
        return self.engine.reminders(self.profiles.list_members(), self.ledger.list_payments(), now)

    def payments(self) -> List[PaymentRecord]:
        return self.ledger.list_payments()


def create_service(store) -> PaymentService:
    """Build a service whose collaborators are all the same ``SqlDuesStore``."""
    return PaymentService(profiles=store, configs=store, ledger=store, mirror=store)
