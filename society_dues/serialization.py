"""Conversion between engine dataclasses and stored documents.

Documents use the field names of the realtime database the society app
writes to (``users/<uid>``, ``config/maintenance``, ``recentPayments/<id>``),
so records exported from it load unchanged. Amounts are written as JSON
numbers and read back as ``Decimal``.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional

from .data_models import BillingConfig, MemberAccount, PaymentMethod, PaymentRecord
from .utils import to_decimal


def _number(value: Optional[Decimal]) -> Any:
    """Render a Decimal as an int when integral, else a float."""
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def member_to_dict(member: MemberAccount) -> Dict[str, Any]:
    return {
        "id": member.id,
        "fullName": member.name,
        "email": member.email,
        "flatNumber": member.flat,
        "dues": _number(member.dues_override),
        "paid": _number(member.paid_total),
        "lateFeeAssessedOn": member.late_fee_assessed_period,
        "status": member.status,
    }


def member_from_dict(data: Dict[str, Any], member_id: Optional[str] = None) -> MemberAccount:
    """Build a member from a ``users`` or legacy ``members`` document.

    Both node shapes are accepted: ``fullName``/``flatNumber`` and the older
    ``name``/``flat``.
    """
    return MemberAccount(
        id=_text(member_id if member_id is not None else data.get("id")),
        email=_text(data.get("email")),
        flat=_text(data.get("flatNumber", data.get("flat"))),
        dues_override=to_decimal(data.get("dues")),
        paid_total=to_decimal(data.get("paid")),
        late_fee_assessed_period=data.get("lateFeeAssessedOn") or None,
        name=_text(data.get("fullName", data.get("name"))),
        status=_text(data.get("status")) or "Active",
    )


def config_to_dict(config: BillingConfig) -> Dict[str, Any]:
    data = {
        "maintenanceCharge": _number(config.maintenance_charge),
        "waterCharge": _number(config.water_charge),
        "sinkingFund": _number(config.sinking_fund),
        "dueDateISO": config.due_date_iso,
        "lateFee": _number(config.late_fee),
        "contactEmail": config.contact_email,
    }
    if config.due_date is not None:
        data["dueDate"] = config.due_date
    return data


def config_from_dict(data: Optional[Dict[str, Any]]) -> Optional[BillingConfig]:
    if not data:
        return None
    due_date = data.get("dueDate")
    return BillingConfig(
        maintenance_charge=to_decimal(data.get("maintenanceCharge")),
        water_charge=to_decimal(data.get("waterCharge")),
        sinking_fund=to_decimal(data.get("sinkingFund")),
        due_date_iso=_text(data.get("dueDateISO")),
        late_fee=to_decimal(data.get("lateFee")),
        due_date=None if due_date in (None, "") else str(due_date),
        contact_email=_text(data.get("contactEmail")),
    )


def payment_to_dict(record: PaymentRecord) -> Dict[str, Any]:
    return {
        "memberRef": record.member_ref,
        "uid": record.member_id,
        "email": record.email or None,
        "flat": record.flat or None,
        "member": record.member_name or None,
        "amount": _number(record.amount),
        "method": record.method.tag,
        "createdAt": record.occurred_at,
        "date": record.occurred_date_string,
        "lateFeeAddedToDues": _number(record.late_fee_added_to_dues),
        "wasLatePayment": record.was_late_payment,
        "receipt": record.receipt,
        "previousDue": _number(record.previous_due),
        "remainingDue": _number(record.remaining_due),
        "razorpayPaymentId": record.gateway_payment_id,
        "razorpayOrderId": record.gateway_order_id,
    }


def payment_from_dict(data: Dict[str, Any]) -> PaymentRecord:
    """Build a payment record from a ``recentPayments`` document.

    ``createdAt`` is kept only when it is a number; anything else leaves the
    record to fall back on its ``date`` string.
    """
    created_at = data.get("createdAt")
    if isinstance(created_at, bool) or not isinstance(created_at, (int, float)):
        created_at = None
    email = _text(data.get("email"))
    flat = _text(data.get("flat"))
    return PaymentRecord(
        member_ref=_text(data.get("memberRef")) or email or flat,
        amount=to_decimal(data.get("amount")),
        method=PaymentMethod.parse(data.get("method") or PaymentMethod.MANUAL_EDIT.value),
        email=email,
        flat=flat,
        occurred_at=int(created_at) if created_at is not None else None,
        occurred_date_string=data.get("date") or None,
        late_fee_added_to_dues=to_decimal(data.get("lateFeeAddedToDues")),
        was_late_payment=bool(data.get("wasLatePayment", False)),
        receipt=_text(data.get("receipt")),
        member_name=_text(data.get("member", data.get("name"))),
        member_id=data.get("uid") or None,
        previous_due=_optional_decimal(data.get("previousDue")),
        remaining_due=_optional_decimal(data.get("remainingDue")),
        gateway_payment_id=data.get("razorpayPaymentId") or None,
        gateway_order_id=data.get("razorpayOrderId") or None,
    )
