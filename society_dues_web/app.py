import io
import logging
import os
from datetime import datetime

from flask import Blueprint, Flask, Response, current_app, jsonify, request

from society_dues.data_models import BillingConfig, PaymentMethod
from society_dues.engine import validate_amount
from society_dues.errors import (
    DuplicatePayment,
    GatewayFailure,
    InvalidAmount,
    MemberNotFound,
    NoConfig,
    VerificationFailed,
)
from society_dues.gateway import CheckoutResponse, create_gateway_from_env, verify_checkout
from society_dues.reports import filter_payments, payment_totals, write_csv
from society_dues.serialization import config_from_dict, config_to_dict, member_to_dict, payment_to_dict
from society_dues.service import create_service
from society_dues.store import create_store_from_env
from society_dues.utils import parse_iso_date

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")


def _service():
    return current_app.config["DUES_SERVICE"]


def _gateway():
    gateway = current_app.config.get("DUES_GATEWAY")
    if gateway is None:
        raise GatewayFailure("Payment gateway is not configured")
    return gateway


def _moment(value):
    """Parse an optional ``on`` value; None means the service clock."""
    if not value:
        return None
    return datetime.fromisoformat(value.strip())


def _day(value):
    if not value:
        return None
    parsed = parse_iso_date(value)
    if parsed is None:
        raise ValueError(f"Invalid date: {value}")
    return parsed


def _money(value):
    return float(value)


def _quote_json(quote):
    return {
        "pending": _money(quote.pending),
        "lateFee": _money(quote.late_fee),
        "maxPayable": _money(quote.max_payable),
        "period": quote.period,
        "isLate": quote.is_late,
    }


def _error(message, status):
    return jsonify(success=False, error=message), status


def register_error_handlers(app):
    @app.errorhandler(InvalidAmount)
    def invalid_amount(e):
        return _error(str(e), 400)

    @app.errorhandler(ValueError)
    def bad_value(e):
        return _error(str(e), 400)

    @app.errorhandler(MemberNotFound)
    def member_not_found(e):
        return _error(str(e), 404)

    @app.errorhandler(NoConfig)
    def no_config(e):
        return _error(str(e), 409)

    @app.errorhandler(DuplicatePayment)
    def duplicate_payment(e):
        return _error(str(e), 409)

    @app.errorhandler(GatewayFailure)
    def gateway_failure(e):
        return _error(str(e), 502)

    @app.errorhandler(404)
    def not_found(e):
        return _error("Not found", 404)

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error serving %s", request.path, exc_info=getattr(e, "original_exception", None))
        return _error("Internal server error", 500)


@api.get("/health")
def health():
    return jsonify(status="ok", message="Dues server is running")


@api.get("/config")
def get_config():
    config = _service().configs.get_config()
    if config is None:
        return jsonify(config=None)
    next_due = _service().engine.next_due_date()
    return jsonify(config=config_to_dict(config), nextDueDate=next_due.isoformat() if next_due else None)


@api.put("/config")
def save_config():
    data = request.get_json() or {}
    config = config_from_dict(data) or BillingConfig()
    # Keep the bare day number for readers that only know the old field.
    due = parse_iso_date(config.due_date_iso)
    if due is not None:
        config.due_date = str(due.day)
    _service().save_config(config)
    return jsonify(success=True, config=config_to_dict(config))


@api.get("/members")
def list_members():
    service = _service()
    now = _moment(request.args.get("on")) or service.engine.now()
    payments = service.payments()
    members = []
    for member in service.profiles.list_members():
        data = member_to_dict(member)
        data["pending"] = _money(service.engine.pending(member, payments, now))
        data["paidThisCycle"] = service.engine.has_paid(member, payments, now)
        members.append(data)
    return jsonify(members=members, count=len(members))


@api.post("/members")
def create_member():
    data = request.get_json() or {}
    for field in ("name", "flat"):
        if not str(data.get(field) or "").strip():
            return _error(f"Missing required field: {field}", 400)
    member = _service().create_member(
        str(data["name"]), str(data.get("email") or ""), str(data["flat"]), data.get("dues") or 0
    )
    return jsonify(success=True, member=member_to_dict(member)), 201


@api.get("/members/<member_id>/quote")
def quote_member(member_id):
    quote = _service().quote(member_id, _moment(request.args.get("on")))
    return jsonify(success=True, quote=_quote_json(quote))


@api.post("/members/<member_id>/payments")
def pay_member(member_id):
    """Record an offline payment (cash, UPI, card, bank transfer)."""
    data = request.get_json() or {}
    if "amount" not in data:
        return _error("Missing required field: amount", 400)
    service = _service()
    now = _moment(data.get("on"))
    quote = service.quote(member_id, now)
    amount = validate_amount(data["amount"])
    if amount > quote.max_payable:
        return _error(f"Amount exceeds the payable amount {quote.max_payable:.2f}", 400)
    method = PaymentMethod.parse(data.get("method") or PaymentMethod.CASH.value)
    outcome = service.record_payment(member_id, amount, method, now=now)
    return jsonify(
        success=True,
        payment=payment_to_dict(outcome.record),
        member=member_to_dict(outcome.member),
        lateFeeApplied=outcome.allocation.late_fee_applied,
    ), 201


@api.get("/dashboard")
def dashboard():
    summary = _service().dashboard(_moment(request.args.get("on")))
    return jsonify(
        totalMembers=summary.total_members,
        paidThisCycle=summary.paid_this_cycle,
        totalCollected=_money(summary.total_collected),
        totalDues=_money(summary.total_outstanding),
    )


@api.get("/reminders")
def reminders():
    pending = _service().reminders(_moment(request.args.get("on")))
    return jsonify(
        members=[
            {"id": m.id, "name": m.name, "email": m.email, "flat": m.flat, "pending": _money(amount)}
            for m, amount in pending
        ]
    )


def _filtered_payments():
    return filter_payments(
        _service().payments(),
        request.args.get("search", ""),
        _day(request.args.get("from")),
        _day(request.args.get("to")),
    )


@api.get("/payments")
def list_payments():
    records = _filtered_payments()
    count, total = payment_totals(records)
    return jsonify(payments=[payment_to_dict(r) for r in records], count=count, amount=_money(total))


@api.get("/payments/export")
def export_payments():
    buffer = io.StringIO()
    write_csv(buffer, _filtered_payments())
    filename = f"recent-payments-{datetime.now().date().isoformat()}.csv"
    return Response(
        buffer.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@api.post("/payment/create-order")
def create_order():
    data = request.get_json() or {}
    amount = data.get("amount")
    if amount in (None, ""):
        return _error("Invalid amount", 400)
    value = validate_amount(amount)
    order = _gateway().create_order(
        value,
        currency=data.get("currency") or "INR",
        receipt=data.get("receipt"),
        notes=data.get("notes") or {},
    )
    return jsonify(
        success=True,
        order={"id": order.id, "amount": order.amount_minor, "currency": order.currency, "receipt": order.receipt},
    )


def _payment_json(payment):
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "amount": _money(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "method": payment.method,
        "email": payment.email,
        "contact": payment.contact,
        "created_at": payment.created_at,
    }


@api.post("/payment/verify")
def verify_payment():
    """Verify a checkout signature and, given a member id, record the payment.

    The recorded amount is the one the gateway reports for the payment (or
    its order), never an amount supplied by the client.
    """
    data = request.get_json() or {}
    order_id = data.get("razorpay_order_id")
    payment_id = data.get("razorpay_payment_id")
    signature = data.get("razorpay_signature")
    if not order_id or not payment_id or not signature:
        return _error("Missing required payment verification parameters", 400)

    gateway = _gateway()
    try:
        details = verify_checkout(gateway, CheckoutResponse(payment_id, order_id, signature))
    except VerificationFailed as e:
        logger.warning("Rejected checkout for order %s payment %s: %s", order_id, payment_id, e)
        return jsonify(success=False, verified=False, error="Payment verification failed"), 400

    body = {"success": True, "verified": True, "message": "Payment verified successfully"}
    if details is not None:
        body["payment"] = _payment_json(details)
    else:
        body["message"] = "Payment verified successfully (details fetch failed)"

    member_id = data.get("member_id")
    if member_id:
        service = _service()
        service.check_new_gateway_payment(payment_id)
        amount = details.amount if details is not None else gateway.fetch_order(order_id).amount
        claimed = data.get("amount")
        if claimed not in (None, "") and validate_amount(claimed) != amount:
            return _error(f"Amount {claimed} does not match the gateway amount {amount:.2f}", 400)
        quote = service.quote(member_id)
        if amount > quote.max_payable:
            return _error(f"Amount {amount:.2f} exceeds the payable amount {quote.max_payable:.2f}", 400)
        outcome = service.record_payment(
            member_id,
            amount,
            PaymentMethod.RAZORPAY,
            gateway_payment_id=payment_id,
            gateway_order_id=order_id,
        )
        body["record"] = payment_to_dict(outcome.record)
        body["member"] = member_to_dict(outcome.member)
    return jsonify(body)


@api.get("/payment/<payment_id>")
def get_payment(payment_id):
    payment = _gateway().fetch_payment(payment_id)
    return jsonify(success=True, payment=_payment_json(payment))


@api.post("/payment/webhook")
def payment_webhook():
    gateway = _gateway()
    if not gateway.verify_webhook_signature(request.get_data(), request.headers.get("X-Razorpay-Signature")):
        logger.warning("Rejected webhook with an invalid signature")
        return _error("Invalid webhook signature", 400)
    data = request.get_json(silent=True) or {}
    event = data.get("event")
    entity = ((data.get("payload") or {}).get("payment") or {}).get("entity") or {}
    if event in ("payment.authorized", "payment.captured", "payment.failed"):
        logger.info("Webhook %s for payment %s", event, entity.get("id"))
    else:
        logger.info("Unhandled webhook event %s", event)
    return jsonify(received=True)


def create_app(service=None, gateway=None):
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret-key")
    if service is None:
        service = create_service(create_store_from_env(os.environ.get("DUES_DATABASE_URL")))
    if gateway is None:
        gateway = create_gateway_from_env()
    app.config["DUES_SERVICE"] = service
    app.config["DUES_GATEWAY"] = gateway
    app.register_blueprint(api)
    register_error_handlers(app)
    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Starting society dues server...")
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)), debug=True)
