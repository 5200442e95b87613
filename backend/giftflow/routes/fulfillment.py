# Overview: Flask API routes for fulfillment; service-to-service order submission.

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_api_token
from ..services import fulfillment_service
from ..services.fulfillment_service import (
    FulfillmentError,
    MarketplaceConfigurationError,
    MarketplaceOrderError,
    MarketplaceUnavailableError,
    OrderNotFoundError,
    ShippingAddressError,
    TRIGGER_CHECKOUT,
    VALID_TRIGGER_SOURCES,
)


fulfillment_bp = Blueprint("fulfillment", __name__, url_prefix="/api/orders")


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


@fulfillment_bp.post("/submit")
@require_api_token("service")
def submit_order_route():
    """
    Submit an order to the marketplace.

    Request body:
    {
        "orderId": "uuid",
        "isTestMode": false,      (optional)
        "debugMode": false,       (optional, echoes the redacted request)
        "triggerSource": "checkout"  (optional, audit only)
    }

    Returns:
        200: {success: true, zincOrderId, alreadySubmitted}
        400: invalid input, order not submittable, incomplete shipping address
        404: order not found
        409: blocked by the guard layer
        502: marketplace rejected the order or did not answer
        503: no marketplace account configured
    """
    data = request.get_json(silent=True) or {}
    order_id = (data.get("orderId") or data.get("order_id") or "").strip()
    trigger_source = data.get("triggerSource") or TRIGGER_CHECKOUT

    if not order_id:
        return jsonify({"success": False, "error": "orderId required"}), 400
    if trigger_source not in VALID_TRIGGER_SOURCES:
        return jsonify({"success": False, "error": f"Invalid triggerSource: {trigger_source}"}), 400

    try:
        result = fulfillment_service.submit_order(
            order_id,
            trigger_source=trigger_source,
            is_test_mode=_flag(data.get("isTestMode")),
            debug_mode=_flag(data.get("debugMode")),
        )
    except OrderNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except ShippingAddressError as e:
        return jsonify({"success": False, "error": str(e), "missingFields": e.missing_fields}), 400
    except MarketplaceConfigurationError as e:
        return jsonify({"success": False, "error": str(e)}), 503
    except MarketplaceOrderError as e:
        return jsonify({
            "success": False,
            "error": str(e),
            "marketplaceStatus": e.status_code,
            "marketplaceResponse": e.body,
        }), 502
    except MarketplaceUnavailableError as e:
        return jsonify({"success": False, "error": str(e), "submissionUnknown": True}), 502
    except FulfillmentError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to submit order %s", order_id)
        return jsonify({"success": False, "error": "Internal server error"}), 500

    if result.blocked:
        return jsonify({
            "success": False,
            "error": "Order blocked by security checks",
            "reasons": result.reasons,
            "warnings": result.warnings,
        }), 409

    body = {
        "success": True,
        "zincOrderId": result.marketplace_order_id,
        "alreadySubmitted": result.already_submitted,
        "degradedPayment": result.degraded_payment,
        "warnings": result.warnings,
    }
    if result.request is not None:
        body["request"] = result.request
    return jsonify(body), 200
