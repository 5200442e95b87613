# Overview: Service-layer operations for fulfillment; submits paid orders to the marketplace.

"""
Fulfillment Service

WHY: Single entry point that places the purchase-on-behalf order upstream.
Checkout, webhooks, the scheduled release sweep and the recovery panel all
call submit_order() the same way; trigger_source is recorded for audit only.

DESIGN PRINCIPLES:
- An order with a marketplace_order_id is done: repeat calls are no-op successes
- Credentials and payment method resolve fully (or degrade explicitly to
  cardholder-name-only) before any request is built
- The guard layer gates every submission
- The attempt is committed BEFORE the network call
- No automatic retry. Retries are explicit re-invocations and count against
  the guard's retry limits
- A transport failure after send means "possibly submitted": the order is
  NOT marked failed; the per-order idempotency key lets the marketplace
  collapse a resubmission

SUBMISSION OUTCOMES:
- 2xx              marketplace_order_id set (only while still null), status processing
- non-2xx          status failed, note with HTTP status + raw body, MarketplaceOrderError
- transport error  marketplace_status submission_unknown, MarketplaceUnavailableError
- guard block      order untouched apart from a note, result.blocked
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import BusinessPaymentMethod, MarketplaceAccount, Order
from ..models.marketplace import ACCOUNT_STATUS_ACTIVE
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SCHEDULED,
    ORDER_STATUS_SHIPPED,
    PAYMENT_STATUS_SUCCEEDED,
)
from ..integrations import IntegrationMisconfiguredError, get_marketplace_client
from ..integrations.marketplace.base import MarketplaceTransportError
from .concurrency import compare_and_set
from .notification_service import send_order_notifications
from .order_guard_service import (
    GuardContext,
    guard_subject,
    perform_security_check,
    record_submission_attempt,
    record_submission_failure,
    record_submission_success,
)
from .order_service import append_note, get_order
from giftflow.time_utils import utcnow, to_utc_z


class FulfillmentError(Exception):
    """Raised for fulfillment errors."""
    pass


class OrderNotFoundError(FulfillmentError):
    pass


class ShippingAddressError(FulfillmentError):
    def __init__(self, missing_fields: list[str]):
        self.missing_fields = list(missing_fields)
        super().__init__(f"Incomplete shipping address. Missing required fields: {', '.join(missing_fields)}")


class MarketplaceConfigurationError(FulfillmentError):
    """No usable marketplace account. The order stays a recovery candidate."""
    pass


class MarketplaceOrderError(FulfillmentError):
    def __init__(self, status_code: int, body):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Marketplace rejected order: HTTP {status_code}")


class MarketplaceUnavailableError(FulfillmentError):
    """Request outcome unknown (timeout / connection failure after send)."""
    pass


# =============================================================================
# CONSTANTS
# =============================================================================

TRIGGER_CHECKOUT = "checkout"
TRIGGER_WEBHOOK = "webhook"
TRIGGER_MANUAL_RECOVERY = "manual_recovery"
TRIGGER_WEBHOOK_RECOVERY = "webhook_recovery"
TRIGGER_SCHEDULED_RELEASE = "scheduled_release"
TRIGGER_RECONCILIATION = "reconciliation"
TRIGGER_CLI = "cli"

VALID_TRIGGER_SOURCES = [
    TRIGGER_CHECKOUT,
    TRIGGER_WEBHOOK,
    TRIGGER_MANUAL_RECOVERY,
    TRIGGER_WEBHOOK_RECOVERY,
    TRIGGER_SCHEDULED_RELEASE,
    TRIGGER_RECONCILIATION,
    TRIGGER_CLI,
]

MARKETPLACE_STATUS_SUBMITTED = "submitted"
MARKETPLACE_STATUS_FAILED = "failed"
MARKETPLACE_STATUS_UNKNOWN = "submission_unknown"

NOT_SUBMITTABLE_STATUSES = {
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
}

REQUIRED_SHIPPING_FIELDS = ("name", "address_line1", "city", "state", "zip_code")

DEFAULT_PHONE_NUMBER = "5551234567"
SHIPPING_MAX_PRICE_CENTS = 1000
NOTE_BODY_LIMIT = 4000

WEBHOOK_EVENTS = (
    "request_succeeded",
    "request_failed",
    "tracking_obtained",
    "tracking_updated",
    "status_updated",
)


@dataclass
class SubmissionResult:
    success: bool
    order_id: str
    trigger_source: str
    marketplace_order_id: str | None = None
    already_submitted: bool = False
    blocked: bool = False
    reasons: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    degraded_payment: bool = False
    request: dict | None = None  # debug_mode only, secrets redacted

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "order_id": self.order_id,
            "trigger_source": self.trigger_source,
            "marketplace_order_id": self.marketplace_order_id,
            "already_submitted": self.already_submitted,
            "blocked": self.blocked,
            "reasons": list(self.reasons),
            "warnings": list(self.warnings),
            "degraded_payment": self.degraded_payment,
        }
        if self.request is not None:
            data["request"] = self.request
        return data


# =============================================================================
# SHIPPING ADDRESS
# =============================================================================

def _addr(address: dict, *keys: str):
    for key in keys:
        value = address.get(key)
        if isinstance(value, str):
            value = value.strip()
        if value:
            return value
    return None


def normalize_shipping_address(address: dict | None) -> dict:
    """Map the checkout's address spellings onto one set of keys."""
    address = address or {}
    return {
        "name": _addr(address, "name", "full_name", "fullName"),
        "address_line1": _addr(address, "address_line1", "addressLine1", "address"),
        "address_line2": _addr(address, "address_line2", "addressLine2") or "",
        "city": _addr(address, "city"),
        "state": _addr(address, "state"),
        "zip_code": _addr(address, "zip_code", "zipCode", "postal_code"),
        "country": _addr(address, "country") or "US",
        "phone": _addr(address, "phone", "phone_number"),
    }


def validate_shipping_address(address: dict | None) -> list[str]:
    """Returns the missing required fields (empty when complete)."""
    normalized = normalize_shipping_address(address)
    return [key for key in REQUIRED_SHIPPING_FIELDS if not normalized[key]]


def split_name(full_name: str | None) -> tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _marketplace_address(address: dict | None) -> dict:
    normalized = normalize_shipping_address(address)
    first_name, last_name = split_name(normalized["name"])
    return {
        "first_name": first_name,
        "last_name": last_name,
        "address_line1": normalized["address_line1"] or "",
        "address_line2": normalized["address_line2"],
        "zip_code": normalized["zip_code"] or "",
        "city": normalized["city"] or "",
        "state": normalized["state"] or "",
        "country": normalized["country"],
        "phone_number": normalized["phone"] or DEFAULT_PHONE_NUMBER,
    }


# =============================================================================
# CREDENTIALS
# =============================================================================

def resolve_marketplace_account() -> MarketplaceAccount:
    account = (
        db.session.query(MarketplaceAccount)
        .filter(MarketplaceAccount.account_status == ACCOUNT_STATUS_ACTIVE)
        .order_by(MarketplaceAccount.is_default.desc(), MarketplaceAccount.id.asc())
        .first()
    )
    if account is None or not account.api_key:
        raise MarketplaceConfigurationError("No active marketplace account configured")
    return account


def resolve_marketplace_client():
    try:
        return get_marketplace_client()
    except IntegrationMisconfiguredError as e:
        raise MarketplaceConfigurationError(f"Marketplace client unavailable ({e})") from e


def resolve_payment_method() -> BusinessPaymentMethod | None:
    """Default active card, or None for degraded cardholder-name-only mode."""
    method = (
        db.session.query(BusinessPaymentMethod)
        .filter(BusinessPaymentMethod.is_active.is_(True))
        .order_by(BusinessPaymentMethod.is_default.desc(), BusinessPaymentMethod.id.asc())
        .first()
    )
    if method is None or not method.is_complete():
        return None
    return method


# =============================================================================
# REQUEST BUILDING (PURE)
# =============================================================================

def to_cents(amount) -> int:
    return int((Decimal(str(amount or 0)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def idempotency_key(order: Order) -> str:
    return f"giftflow-order-{order.id}"


def build_marketplace_request(
    order: Order,
    items: list,
    account: MarketplaceAccount,
    payment_method: BusinessPaymentMethod | None,
    *,
    trigger_source: str,
    is_test_mode: bool = False,
    retailer: str = "amazon",
    max_shipping_days: int = 5,
    webhook_base_url: str | None = None,
    degraded_cardholder_name: str = "Gift Orders",
    webhook_secret: str | None = None,
) -> dict:
    """
    Build the complete marketplace order request.

    Pure: reads only its arguments. Billing defaults to the payment method's
    address, then the order's billing address, then the shipping address.
    """
    shipping = _marketplace_address(order.shipping_address)

    billing_source = None
    if payment_method is not None and payment_method.billing_address:
        billing_source = payment_method.billing_address
    elif order.billing_address:
        billing_source = order.billing_address
    billing = _marketplace_address(billing_source) if billing_source else dict(shipping)

    if payment_method is not None:
        payment = {
            "name_on_card": payment_method.name_on_card,
            "card_token": payment_method.card_token,
            "expiration_month": payment_method.expiration_month,
            "expiration_year": payment_method.expiration_year,
            "use_gift": False,
        }
    else:
        payment = {
            "name_on_card": degraded_cardholder_name,
            "use_gift": False,
        }

    request = {
        "idempotency_key": idempotency_key(order),
        "retailer": account.retailer or retailer,
        "products": [
            {"product_id": item.product_id, "quantity": item.quantity}
            for item in items
        ],
        "max_price": to_cents(order.total_amount),
        "shipping_address": shipping,
        "billing_address": billing,
        "payment_method": payment,
        "is_gift": bool(order.is_gift),
        "gift_message": order.gift_message or "",
        "shipping": {
            "order_by": "price",
            "max_days": max_shipping_days,
            "max_price": SHIPPING_MAX_PRICE_CENTS,
        },
        "is_test_mode": bool(is_test_mode),
        "retailer_credentials": {
            "email": account.retailer_email,
            "password": account.retailer_password,
        },
        "client_notes": {
            "order_id": order.id,
            "order_number": order.order_number,
            "payment_intent_id": order.payment_intent_id,
            "checkout_session_id": order.checkout_session_id,
            "trigger_source": trigger_source,
        },
    }

    if webhook_base_url:
        token = marketplace_webhook_token(order.id, webhook_secret) if webhook_secret else None
        request["webhooks"] = {
            event: marketplace_webhook_url(webhook_base_url, event, order.id, token)
            for event in WEBHOOK_EVENTS
        }

    return request


def marketplace_webhook_token(order_id: str, secret: str) -> str:
    """HMAC-SHA256 of the order id; proves a callback URL was issued by us."""
    return hmac.new(secret.encode("utf-8"), order_id.encode("utf-8"), hashlib.sha256).hexdigest()


def marketplace_webhook_url(base_url: str, event: str, order_id: str, token: str | None = None) -> str:
    url = f"{base_url.rstrip('/')}/api/webhooks/marketplace/{event}?orderId={order_id}"
    if token:
        url += f"&token={token}"
    return url


def redact_request(request: dict) -> dict:
    redacted = dict(request)
    if "retailer_credentials" in redacted:
        redacted["retailer_credentials"] = {"email": request["retailer_credentials"].get("email"), "password": "***"}
    if "payment_method" in redacted:
        payment = dict(request["payment_method"])
        if payment.get("card_token"):
            payment["card_token"] = "***"
        redacted["payment_method"] = payment
    return redacted


# =============================================================================
# SUBMISSION
# =============================================================================

def _truncate(text: str, limit: int = NOTE_BODY_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit] + "...(truncated)"


def _guard_items(order: Order) -> list[dict]:
    return [{"product_id": item.product_id, "quantity": item.quantity} for item in order.items]


def _ensure_submittable(order: Order) -> None:
    if order.payment_status != PAYMENT_STATUS_SUCCEEDED:
        raise FulfillmentError(f"Order {order.order_number} payment has not succeeded")
    if order.status == ORDER_STATUS_SCHEDULED:
        raise FulfillmentError(
            f"Order {order.order_number} is scheduled for {order.scheduled_delivery_date}; release it first"
        )
    if order.status in NOT_SUBMITTABLE_STATUSES:
        raise FulfillmentError(f"Order {order.order_number} is {order.status} and cannot be submitted")


def _fail_shipping_validation(order: Order, missing: list[str], trigger_source: str) -> None:
    order.status = ORDER_STATUS_FAILED
    order.last_error = {
        "error_code": "incomplete_shipping_address",
        "missing_fields": missing,
        "message": f"Cannot submit to marketplace: missing {', '.join(missing)}",
        "timestamp": to_utc_z(utcnow()),
    }
    order.updated_at = utcnow()
    append_note(order.id, f"Submission failed ({trigger_source}): incomplete shipping address, missing {', '.join(missing)}")
    db.session.commit()


def submit_order(
    order_id: str,
    *,
    trigger_source: str = TRIGGER_CHECKOUT,
    is_test_mode: bool = False,
    debug_mode: bool = False,
    marketplace=None,
    notifier=None,
    suspicious_policy=None,
) -> SubmissionResult:
    """
    Submit an order to the marketplace.

    Returns:
        SubmissionResult (success, already_submitted, or blocked by the guard)

    Raises:
        OrderNotFoundError, FulfillmentError (not submittable),
        ShippingAddressError, MarketplaceConfigurationError,
        MarketplaceOrderError (non-2xx), MarketplaceUnavailableError (outcome unknown)
    """
    cfg = current_app.config

    order = get_order(order_id)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")

    if order.marketplace_order_id:
        current_app.logger.info(
            "Order %s already submitted as %s (%s); skipping", order_id, order.marketplace_order_id, trigger_source
        )
        return SubmissionResult(
            success=True,
            order_id=order_id,
            trigger_source=trigger_source,
            marketplace_order_id=order.marketplace_order_id,
            already_submitted=True,
        )

    _ensure_submittable(order)

    items = list(order.items)
    if not items:
        raise FulfillmentError(f"No order items found for order {order.order_number}")

    missing = validate_shipping_address(order.shipping_address)
    if missing:
        _fail_shipping_validation(order, missing, trigger_source)
        current_app.logger.error("Order %s has incomplete shipping address: %s", order_id, missing)
        raise ShippingAddressError(missing)

    try:
        account = resolve_marketplace_account()
        marketplace = marketplace or resolve_marketplace_client()
    except MarketplaceConfigurationError as e:
        append_note(order_id, f"Submission deferred ({trigger_source}): {e}")
        db.session.commit()
        current_app.logger.error("Order %s cannot be submitted: %s", order_id, e)
        raise

    payment_method = resolve_payment_method()
    degraded = payment_method is None
    if degraded:
        current_app.logger.warning(
            "Order %s: no complete business payment method, submitting with cardholder name only", order_id
        )

    prior_attempts = order.submission_attempts or 0
    subject = guard_subject(order)
    context = GuardContext(
        user_id=subject,
        order_id=order_id,
        total_amount=Decimal(order.total_amount or 0),
        items=_guard_items(order),
        shipping_address=order.shipping_address,
        is_retry=prior_attempts > 0,
        retry_count=prior_attempts,
    )
    guard = perform_security_check(context, suspicious_policy=suspicious_policy)
    if guard.blocked:
        append_note(order_id, f"Submission blocked by guard ({trigger_source}): {'; '.join(guard.errors)}")
        db.session.commit()
        return SubmissionResult(
            success=False,
            order_id=order_id,
            trigger_source=trigger_source,
            blocked=True,
            reasons=list(guard.errors),
            warnings=list(guard.warnings),
            degraded_payment=degraded,
        )

    order = get_order(order_id)
    test_mode = bool(is_test_mode or cfg.get("MARKETPLACE_TEST_MODE"))
    request = build_marketplace_request(
        order,
        items,
        account,
        payment_method,
        trigger_source=trigger_source,
        is_test_mode=test_mode,
        retailer=cfg.get("MARKETPLACE_RETAILER", "amazon"),
        max_shipping_days=int(cfg.get("MARKETPLACE_MAX_SHIPPING_DAYS", 5)),
        webhook_base_url=cfg.get("WEBHOOK_BASE_URL") or None,
        degraded_cardholder_name=cfg.get("DEGRADED_CARDHOLDER_NAME", "Gift Orders"),
        webhook_secret=cfg.get("MARKETPLACE_WEBHOOK_SECRET") or None,
    )
    api_key = account.api_key
    total_amount = Decimal(order.total_amount or 0)

    # Record the attempt before the network call
    try:
        order.submission_attempts = prior_attempts + 1
        order.last_submission_at = utcnow()
        order.updated_at = utcnow()
        append_note(order_id, f"Submitting to marketplace ({trigger_source}), attempt {prior_attempts + 1}")
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        current = get_order(order_id)
        if current is not None and current.marketplace_order_id:
            return SubmissionResult(
                success=True,
                order_id=order_id,
                trigger_source=trigger_source,
                marketplace_order_id=current.marketplace_order_id,
                already_submitted=True,
            )
        raise FulfillmentError(f"Order {order_id} is being submitted concurrently")

    record_submission_attempt(context)

    current_app.logger.info(
        "Submitting order %s to marketplace (%s, attempt %s, test_mode=%s, degraded_payment=%s)",
        order_id, trigger_source, prior_attempts + 1, test_mode, degraded,
    )

    try:
        response = marketplace.submit_order(request, api_key=api_key)
    except MarketplaceTransportError as e:
        _mark_unknown(order_id, trigger_source, str(e))
        record_submission_failure(subject, order_id, "transport_error", {"error": str(e)})
        raise MarketplaceUnavailableError(
            f"Marketplace did not answer for order {order_id}; submission state unknown"
        ) from e

    if not response.ok:
        _mark_failed(order_id, trigger_source, response.status_code, response.body_text())
        record_submission_failure(
            subject, order_id, "marketplace_rejected", {"status_code": response.status_code}
        )
        raise MarketplaceOrderError(response.status_code, response.body)

    marketplace_order_id = response.request_id
    if not marketplace_order_id:
        _mark_unknown(order_id, trigger_source, f"HTTP {response.status_code} without an order id")
        record_submission_failure(subject, order_id, "missing_order_id", {"status_code": response.status_code})
        raise MarketplaceUnavailableError(f"Marketplace accepted order {order_id} without returning an id")

    won = compare_and_set(
        Order, order_id,
        where=[Order.marketplace_order_id.is_(None)],
        values={
            Order.marketplace_order_id: marketplace_order_id,
            Order.status: ORDER_STATUS_PROCESSING,
            Order.marketplace_status: MARKETPLACE_STATUS_SUBMITTED,
            Order.updated_at: utcnow(),
        },
    )
    if won:
        append_note(order_id, f"Marketplace order placed ({trigger_source}). Marketplace order id: {marketplace_order_id}")
    db.session.commit()

    order = get_order(order_id)
    if not won:
        current_app.logger.warning(
            "Order %s already had marketplace id %s; response id %s not stored",
            order_id, order.marketplace_order_id, marketplace_order_id,
        )
        return SubmissionResult(
            success=True,
            order_id=order_id,
            trigger_source=trigger_source,
            marketplace_order_id=order.marketplace_order_id,
            already_submitted=True,
        )

    record_submission_success(subject, order_id, total_amount)
    current_app.logger.info("Order %s submitted to marketplace as %s", order_id, marketplace_order_id)

    send_order_notifications(order, dispatcher=notifier)

    return SubmissionResult(
        success=True,
        order_id=order_id,
        trigger_source=trigger_source,
        marketplace_order_id=marketplace_order_id,
        warnings=list(guard.warnings),
        degraded_payment=degraded,
        request=redact_request(request) if debug_mode else None,
    )


def _mark_failed(order_id: str, trigger_source: str, status_code: int, body: str) -> None:
    order = get_order(order_id)
    order.status = ORDER_STATUS_FAILED
    order.marketplace_status = MARKETPLACE_STATUS_FAILED
    order.last_error = {
        "error_code": "marketplace_rejected",
        "status_code": status_code,
        "body": _truncate(body),
        "timestamp": to_utc_z(utcnow()),
    }
    order.updated_at = utcnow()
    append_note(
        order_id,
        f"Marketplace submission failed ({trigger_source}): HTTP {status_code}\n{_truncate(body)}",
    )
    db.session.commit()
    current_app.logger.error("Order %s rejected by marketplace: HTTP %s %s", order_id, status_code, _truncate(body, 500))


def _mark_unknown(order_id: str, trigger_source: str, error: str) -> None:
    order = get_order(order_id)
    order.marketplace_status = MARKETPLACE_STATUS_UNKNOWN
    order.last_error = {
        "error_code": "submission_unknown",
        "message": error,
        "timestamp": to_utc_z(utcnow()),
    }
    order.updated_at = utcnow()
    append_note(
        order_id,
        f"Marketplace submission outcome unknown ({trigger_source}): {error}. "
        "Check the marketplace before resubmitting.",
    )
    db.session.commit()
    current_app.logger.error("Order %s submission outcome unknown: %s", order_id, error)


# =============================================================================
# MARKETPLACE CALLBACKS
# =============================================================================

class MarketplaceCallbackError(FulfillmentError):
    """Callback names an unknown event or a different marketplace request."""
    pass


MARKETPLACE_STATUS_SHIPPED = "shipped"
MARKETPLACE_STATUS_DELIVERED = "delivered"


def verify_marketplace_webhook_token(order_id: str, token: str | None, secret: str | None) -> bool:
    if not secret:
        return True
    if not token:
        return False
    return hmac.compare_digest(marketplace_webhook_token(order_id, secret), token)


def _first_tracking(payload: dict) -> dict:
    tracking = payload.get("tracking")
    if isinstance(tracking, list) and tracking and isinstance(tracking[0], dict):
        return tracking[0]
    if isinstance(tracking, dict):
        return tracking
    return {}


def apply_marketplace_event(order_id: str, event_type: str, payload: dict | None) -> dict:
    """
    Record a marketplace callback against its order.

    request_succeeded stores the request id when the submission outcome was
    unknown. Order status only moves forward: callbacks never reopen a
    shipped, delivered or cancelled order.
    """
    if event_type not in WEBHOOK_EVENTS:
        raise MarketplaceCallbackError(f"Unknown marketplace event: {event_type}")

    order = get_order(order_id)
    if order is None:
        raise OrderNotFoundError(f"Order not found: {order_id}")

    payload = payload or {}
    request_id = payload.get("request_id")
    if request_id and order.marketplace_order_id and request_id != order.marketplace_order_id:
        raise MarketplaceCallbackError(
            f"Callback for marketplace request {request_id} does not match order {order_id}"
        )

    closed = order.status in NOT_SUBMITTABLE_STATUSES

    if event_type == "request_succeeded":
        if not order.marketplace_order_id and request_id:
            order.marketplace_order_id = request_id
        order.marketplace_status = MARKETPLACE_STATUS_SUBMITTED
        if not closed:
            order.status = ORDER_STATUS_PROCESSING
            order.last_error = None
        note = f"Marketplace confirmed request {order.marketplace_order_id or '(no id)'}"

    elif event_type == "request_failed":
        code = payload.get("code") or "request_failed"
        message = payload.get("message") or ""
        if not closed:
            order.status = ORDER_STATUS_FAILED
            order.marketplace_status = MARKETPLACE_STATUS_FAILED
            order.last_error = {
                "error_code": code,
                "message": message,
                "data": payload.get("data"),
                "timestamp": to_utc_z(utcnow()),
            }
        note = _truncate(f"Marketplace request failed: {code} {message}".rstrip())

    elif event_type in ("tracking_obtained", "tracking_updated"):
        tracking = _first_tracking(payload)
        number = tracking.get("tracking_number") or tracking.get("merchant_order_id") or "-"
        carrier = tracking.get("carrier") or "unknown carrier"
        delivered = str(tracking.get("delivery_status") or "").lower() == "delivered"
        if delivered and order.status != ORDER_STATUS_CANCELLED:
            order.status = ORDER_STATUS_DELIVERED
            order.marketplace_status = MARKETPLACE_STATUS_DELIVERED
        elif event_type == "tracking_obtained" and not closed:
            order.status = ORDER_STATUS_SHIPPED
            order.marketplace_status = MARKETPLACE_STATUS_SHIPPED
        note = f"Tracking {number} ({carrier})" + (": delivered" if delivered else "")

    else:
        note = _truncate(f"Marketplace status update: {payload.get('message') or payload.get('status') or '-'}")

    order.updated_at = utcnow()
    append_note(order_id, note)
    db.session.commit()
    current_app.logger.info("Order %s marketplace event %s: %s", order_id, event_type, order.status)

    return {
        "order_id": order_id,
        "event": event_type,
        "status": order.status,
        "marketplace_status": order.marketplace_status,
        "marketplace_order_id": order.marketplace_order_id,
    }
