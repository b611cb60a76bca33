import hashlib
import hmac
from decimal import Decimal

import pytest
from razorpay.errors import BadRequestError, ServerError

from society_dues.errors import GatewayFailure, UserCancelled, VerificationFailed
from society_dues.gateway import (
    CheckoutResponse,
    RazorpayGateway,
    collect_payment,
    compute_signature,
    from_minor_units,
    to_minor_units,
    verify_checkout,
)

SECRET = "test_secret"


class FakeOrders:
    def __init__(self, error=None):
        self.created = []
        self.error = error

    def create(self, data):
        if self.error:
            raise self.error
        self.created.append(data)
        return {"id": f"order_{len(self.created)}", "amount": data["amount"], "currency": data["currency"],
                "receipt": data["receipt"]}

    def fetch(self, order_id):
        if self.error:
            raise self.error
        return {"id": order_id, "amount": 135000, "currency": "INR", "receipt": "RCPT-1", "status": "paid"}


class FakePayments:
    def __init__(self, error=None, order_id="order_1"):
        self.error = error
        self.order_id = order_id

    def fetch(self, payment_id):
        if self.error:
            raise self.error
        return {"id": payment_id, "order_id": self.order_id, "amount": 135000, "currency": "INR",
                "status": "captured", "method": "upi", "email": "a@x.com", "created_at": 1792300000}


class FakeClient:
    def __init__(self, order_error=None, fetch_error=None, payment_order_id="order_1"):
        self.order = FakeOrders(order_error)
        self.payment = FakePayments(fetch_error, payment_order_id)


@pytest.fixture
def client():
    return FakeClient()


@pytest.fixture
def gateway(client):
    return RazorpayGateway("rzp_test_key", SECRET, webhook_secret="hook_secret", client=client)


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("1350")) == 135000
    assert to_minor_units("10.005") == 1001
    assert to_minor_units(0.1) == 10
    assert from_minor_units(135050) == Decimal("1350.50")


def test_signature_is_hmac_of_order_and_payment():
    expected = hmac.new(SECRET.encode(), b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert compute_signature(SECRET, "order_1", "pay_1") == expected


def test_create_order_sends_paise(gateway, client):
    order = gateway.create_order(Decimal("1350"), receipt="RCPT-1")
    assert client.order.created == [{"amount": 135000, "currency": "INR", "receipt": "RCPT-1", "notes": {}}]
    assert order.id == "order_1"
    assert order.amount == Decimal("1350")
    assert order.amount_minor == 135000


def test_create_order_generates_receipt(gateway, client):
    order = gateway.create_order("99.50")
    assert order.receipt.startswith("RCPT-")
    assert client.order.created[0]["amount"] == 9950


@pytest.mark.parametrize("amount", ["0", "-1", "NaN"])
def test_create_order_rejects_bad_amounts(gateway, amount):
    with pytest.raises(GatewayFailure):
        gateway.create_order(amount)


@pytest.mark.parametrize("error", [BadRequestError("bad amount"), ServerError("down"), ConnectionError("offline")])
def test_sdk_errors_become_gateway_failures(error):
    gateway = RazorpayGateway("key", SECRET, client=FakeClient(order_error=error, fetch_error=error))
    with pytest.raises(GatewayFailure):
        gateway.create_order(100)
    with pytest.raises(GatewayFailure):
        gateway.fetch_payment("pay_1")


def test_verify_signature(gateway):
    good = compute_signature(SECRET, "order_1", "pay_1")
    assert gateway.verify_signature("order_1", "pay_1", good)
    assert not gateway.verify_signature("order_1", "pay_2", good)
    assert not gateway.verify_signature("order_1", "pay_1", "")


def test_verify_webhook_signature(gateway, client):
    body = b'{"event":"payment.captured"}'
    good = hmac.new(b"hook_secret", body, hashlib.sha256).hexdigest()
    assert gateway.verify_webhook_signature(body, good)
    assert not gateway.verify_webhook_signature(body, "deadbeef")
    assert not gateway.verify_webhook_signature(body, None)
    assert RazorpayGateway("key", SECRET, client=client).verify_webhook_signature(body, None)


def test_fetch_payment_converts_to_rupees(gateway):
    payment = gateway.fetch_payment("pay_7")
    assert payment.id == "pay_7"
    assert payment.amount == Decimal("1350")
    assert payment.status == "captured"


def test_gateway_requires_secret(client):
    with pytest.raises(ValueError):
        RazorpayGateway("key", "", client=client)


def test_collect_payment_happy_path(gateway):
    seen = {}

    def checkout(order, prefill):
        seen["prefill"] = prefill
        return CheckoutResponse("pay_1", order.id, compute_signature(SECRET, order.id, "pay_1"))

    verified = collect_payment(gateway, Decimal("1350"), checkout, {"email": "a@x.com"})
    assert verified.payment_id == "pay_1"
    assert verified.order.id == "order_1"
    assert verified.details.amount == Decimal("1350")
    assert seen["prefill"] == {"email": "a@x.com"}


def test_collect_payment_user_cancelled(gateway):
    def checkout(order, prefill):
        raise UserCancelled("Payment cancelled by user")

    with pytest.raises(UserCancelled):
        collect_payment(gateway, 100, checkout)


def test_collect_payment_rejects_forged_signature(gateway):
    def checkout(order, prefill):
        return CheckoutResponse("pay_1", order.id, "forged")

    with pytest.raises(GatewayFailure, match="verification failed"):
        collect_payment(gateway, 100, checkout)


def test_collect_payment_survives_failed_detail_fetch():
    gateway = RazorpayGateway("key", SECRET, client=FakeClient(fetch_error=ServerError("down")))

    def checkout(order, prefill):
        return CheckoutResponse("pay_1", order.id, compute_signature(SECRET, order.id, "pay_1"))

    verified = collect_payment(gateway, 100, checkout)
    assert verified.details is None


def test_fetch_order_converts_to_rupees(gateway):
    order = gateway.fetch_order("order_9")
    assert order.id == "order_9"
    assert order.amount == Decimal("1350")
    assert order.receipt == "RCPT-1"


def test_verify_checkout_returns_payment_details(gateway):
    response = CheckoutResponse("pay_1", "order_1", compute_signature(SECRET, "order_1", "pay_1"))
    details = verify_checkout(gateway, response)
    assert details.amount == Decimal("1350")
    assert details.order_id == "order_1"


def test_verify_checkout_rejects_bad_signature(gateway):
    with pytest.raises(VerificationFailed):
        verify_checkout(gateway, CheckoutResponse("pay_1", "order_1", "forged"))


def test_verify_checkout_rejects_payment_of_another_order():
    gateway = RazorpayGateway("key", SECRET, client=FakeClient(payment_order_id="order_2"))
    response = CheckoutResponse("pay_1", "order_1", compute_signature(SECRET, "order_1", "pay_1"))
    with pytest.raises(VerificationFailed, match="belongs to order order_2"):
        verify_checkout(gateway, response)
