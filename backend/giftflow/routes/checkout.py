# Overview: Flask API routes for checkout; verifies paid sessions and starts fulfillment.

"""
Checkout API Routes

WHY: The storefront calls verify-session after the payment provider
redirects back. This is the normal entry into verify -> schedule -> submit.

Response contract:
- 200 {success: true, order_number, payment_status, scheduled?, processing_date?, fulfillment?}
- 200 {success: false, payment_status, error}   payment not completed (expected)
- 400 missing session_id
- 404 paid session with no order (data-integrity failure)
- 502 payment provider unavailable
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import order_flow_service
from ..services.payment_verification_service import (
    OrderNotFoundError,
    PaymentProviderError,
    PaymentVerificationError,
)


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("/verify-session")
def verify_session_route():
    """
    Verify a checkout session.

    Request body:
    {
        "session_id": "cs_123"
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        session_id = (data.get("session_id") or data.get("sessionId") or "").strip()
        if not session_id:
            return jsonify({"success": False, "error": "session_id required"}), 400

        result = order_flow_service.process_paid_session(session_id)
        return jsonify(result), 200

    except OrderNotFoundError as e:
        return jsonify({"success": False, "error": str(e)}), 404
    except PaymentProviderError as e:
        return jsonify({"success": False, "error": f"Payment provider unavailable: {e}"}), 502
    except PaymentVerificationError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to verify checkout session")
        return jsonify({"success": False, "error": "Internal server error"}), 500
