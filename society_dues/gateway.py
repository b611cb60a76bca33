"""Razorpay payment-gateway client.

Amounts cross the gateway boundary in minor currency units (paise for INR)
and are converted to and from whole-currency ``Decimal`` values here, so the
rest of the package only sees rupees. Order creation and payment lookups go
through the official ``razorpay`` SDK; signature checks are a local
HMAC-SHA256 and need no network access.

Errors from the SDK or the network are re-raised as ``GatewayFailure``.
Nothing is retried.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Optional

import razorpay
from razorpay.errors import BadRequestError, GatewayError, ServerError

from .errors import GatewayFailure, VerificationFailed
from .utils import Number, decimal_from_str, make_receipt_id

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "INR"

_SDK_ERRORS = (BadRequestError, GatewayError, ServerError, OSError)


def to_minor_units(amount: Number) -> int:
    """Convert a whole-currency amount into minor units (rupees to paise)."""
    value = decimal_from_str(amount) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return Decimal(int(amount)) / Decimal(100)


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    """Return the hex HMAC-SHA256 of ``order_id|payment_id`` keyed by ``secret``."""
    body = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: Decimal
    amount_minor: int
    currency: str
    receipt: str


@dataclass(frozen=True)
class CheckoutResponse:
    """What the checkout widget hands back after a successful payment."""

    payment_id: str
    order_id: str
    signature: str


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    order_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    method: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None
    created_at: Optional[int] = None


@dataclass(frozen=True)
class VerifiedPayment:
    order: GatewayOrder
    payment_id: str
    details: Optional[GatewayPayment] = field(default=None)


class RazorpayGateway:
    """Thin wrapper around ``razorpay.Client``.

    ``client`` may be passed in (tests use a fake); otherwise one is built
    from the key id and secret.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        webhook_secret: Optional[str] = None,
        client: Any = None,
    ) -> None:
        if not key_secret:
            raise ValueError("Razorpay key secret is required")
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = client if client is not None else razorpay.Client(auth=(key_id, key_secret))

    def create_order(
        self,
        amount: Number,
        currency: str = DEFAULT_CURRENCY,
        receipt: Optional[str] = None,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        value = decimal_from_str(amount)
        if not value.is_finite() or value <= 0:
            raise GatewayFailure(f"Invalid amount: {amount}")
        data = {
            "amount": to_minor_units(value),
            "currency": currency,
            "receipt": receipt or make_receipt_id(),
            "notes": notes or {},
        }
        try:
            order = self._client.order.create(data=data)
        except _SDK_ERRORS as exc:
            raise GatewayFailure(f"Failed to create order: {exc}") from exc
        logger.info("Created Razorpay order %s for %s %s", order["id"], value, currency)
        return self._to_order(order, data["receipt"])

    def fetch_order(self, order_id: str) -> GatewayOrder:
        try:
            order = self._client.order.fetch(order_id)
        except _SDK_ERRORS as exc:
            raise GatewayFailure(f"Failed to fetch order {order_id}: {exc}") from exc
        return self._to_order(order, order.get("receipt", ""))

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature):
            return False
        expected = compute_signature(self._key_secret, order_id, payment_id)
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check a webhook's ``X-Razorpay-Signature`` against the raw body.

        Without a configured webhook secret every webhook is accepted.
        """
        if not self._webhook_secret:
            return True
        if not signature:
            return False
        expected = hmac.new(self._webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    @staticmethod
    def _to_order(order: Dict[str, Any], receipt: str) -> GatewayOrder:
        return GatewayOrder(
            id=order["id"],
            amount=from_minor_units(order["amount"]),
            amount_minor=int(order["amount"]),
            currency=order.get("currency", DEFAULT_CURRENCY),
            receipt=order.get("receipt") or receipt,
        )

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        try:
            payment = self._client.payment.fetch(payment_id)
        except _SDK_ERRORS as exc:
            raise GatewayFailure(f"Failed to fetch payment {payment_id}: {exc}") from exc
        return GatewayPayment(
            id=payment["id"],
            order_id=payment.get("order_id"),
            amount=from_minor_units(payment["amount"]),
            currency=payment.get("currency", DEFAULT_CURRENCY),
            status=payment.get("status", ""),
            method=payment.get("method"),
            email=payment.get("email"),
            contact=payment.get("contact"),
            created_at=payment.get("created_at"),
        )


Checkout = Callable[[GatewayOrder, Dict[str, str]], CheckoutResponse]


def verify_checkout(gateway: RazorpayGateway, response: CheckoutResponse) -> Optional[GatewayPayment]:
    """Verify a checkout response and fetch the payment it names.

    Raises ``VerificationFailed`` when the signature does not match or the
    fetched payment belongs to another order. A verified payment whose
    details cannot be fetched yields None; the failed fetch does not undo
    the verification.
    """
    if not gateway.verify_signature(response.order_id, response.payment_id, response.signature):
        raise VerificationFailed("Payment verification failed")
    try:
        details = gateway.fetch_payment(response.payment_id)
    except GatewayFailure:
        logger.warning("Payment %s verified but details could not be fetched", response.payment_id, exc_info=True)
        return None
    if details.order_id and details.order_id != response.order_id:
        raise VerificationFailed(
            f"Payment {response.payment_id} belongs to order {details.order_id}, not {response.order_id}"
        )
    return details


def collect_payment(
    gateway: RazorpayGateway,
    amount: Number,
    checkout: Checkout,
    prefill: Optional[Dict[str, str]] = None,
    *,
    receipt: Optional[str] = None,
    notes: Optional[Dict[str, str]] = None,
) -> VerifiedPayment:
    """Run the full create-order, checkout, verify flow.

    ``checkout`` is the interactive step: it receives the order and the
    prefill data and returns the gateway's response, or raises
    ``UserCancelled`` when the member closes the widget.
    """
    order = gateway.create_order(amount, receipt=receipt, notes=notes)
    response = checkout(order, dict(prefill or {}))
    if response.order_id != order.id:
        raise VerificationFailed(f"Checkout returned order {response.order_id}, expected {order.id}")
    details = verify_checkout(gateway, response)
    return VerifiedPayment(order=order, payment_id=response.payment_id, details=details)


def create_gateway_from_env() -> Optional[RazorpayGateway]:
    """Return a gateway configured from ``RAZORPAY_*`` variables, or None if unset."""
    key_id = os.environ.get("RAZORPAY_KEY_ID")
    key_secret = os.environ.get("RAZORPAY_KEY_SECRET")
    if not key_id or not key_secret:
        return None
    return RazorpayGateway(key_id, key_secret, webhook_secret=os.environ.get("RAZORPAY_WEBHOOK_SECRET"))
