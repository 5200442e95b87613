# Overview: Flask API routes for inbound payment and marketplace webhooks.

"""
Payment and Marketplace Webhook Routes

WHY: The customer may never return to the storefront after paying. The
provider's signed checkout.session.completed event drives the same
verify -> schedule -> submit flow.

Non-2xx responses make the provider redeliver, so only failures worth
redelivering (provider lookup, missing order, server error) return one.

Marketplace callbacks arrive on the URLs built into each submission:
/marketplace/<event>?orderId=...&token=... where token is an HMAC of the
order id under MARKETPLACE_WEBHOOK_SECRET.
"""

from flask import Blueprint, request, jsonify, current_app

from ..extensions import db
from ..integrations import get_payments_provider
from ..integrations.payments.base import WebhookSignatureError
from ..models.security import SEVERITY_WARNING
from ..services import fulfillment_service, order_flow_service
from ..services.fulfillment_service import TRIGGER_WEBHOOK, MarketplaceCallbackError
from ..services.order_guard_service import log_security_event
from ..services.payment_verification_service import OrderNotFoundError, PaymentProviderError


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")

HANDLED_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}


@webhooks_bp.post("/stripe")
def stripe_webhook_route():
    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature", "")

    try:
        event = get_payments_provider().construct_webhook_event(payload, signature)
    except WebhookSignatureError as e:
        current_app.logger.warning("Rejected payment webhook: %s", e)
        return jsonify({"error": str(e)}), 400

    if event.type not in HANDLED_EVENTS:
        return jsonify({"received": True, "ignored": event.type}), 200

    session_id = event.data_object.get("id")
    if not session_id:
        return jsonify({"error": "Event has no checkout session id"}), 400

    try:
        result = order_flow_service.process_paid_session(session_id, trigger_source=TRIGGER_WEBHOOK)
    except OrderNotFoundError as e:
        return jsonify({"received": True, "error": str(e)}), 404
    except PaymentProviderError as e:
        return jsonify({"received": True, "error": str(e)}), 502
    except Exception:
        current_app.logger.exception("Failed to process webhook event %s", event.id)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"received": True, "event_id": event.id, "result": result}), 200


@webhooks_bp.post("/marketplace/<event_type>")
def marketplace_webhook_route(event_type):
    order_id = (request.args.get("orderId") or "").strip()
    if not order_id:
        return jsonify({"error": "orderId is required"}), 400

    secret = current_app.config.get("MARKETPLACE_WEBHOOK_SECRET")
    if not fulfillment_service.verify_marketplace_webhook_token(order_id, request.args.get("token"), secret):
        log_security_event(
            event_type="marketplace_webhook_rejected",
            severity=SEVERITY_WARNING,
            order_id=order_id,
            details={"event": event_type, "remote_addr": request.remote_addr},
        )
        db.session.commit()
        return jsonify({"error": "Invalid webhook token"}), 401

    try:
        result = fulfillment_service.apply_marketplace_event(order_id, event_type, request.get_json(silent=True))
    except fulfillment_service.OrderNotFoundError as e:
        return jsonify({"received": True, "error": str(e)}), 404
    except MarketplaceCallbackError as e:
        current_app.logger.warning("Ignored marketplace callback for order %s: %s", order_id, e)
        return jsonify({"received": True, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to process marketplace callback %s for order %s", event_type, order_id)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"received": True, **result}), 200
