# Overview: Flask API routes for the operator recovery panel.

"""
Recovery Panel API Routes

WHY: Paid orders that never reached the marketplace need an operator-driven
(or scheduled) way back into the same submitter the checkout flow uses.

SECURITY:
- Operator bearer token required on every route
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import require_api_token
from ..extensions import db
from ..models import RecoveryLog
from ..services import order_flow_service, reconciliation_service, recovery_service
from ..services.fulfillment_service import (
    TRIGGER_MANUAL_RECOVERY,
    TRIGGER_WEBHOOK_RECOVERY,
)
from ..services.order_service import get_order
from ..services.recovery_service import RecoveryError


recovery_bp = Blueprint("recovery", __name__, url_prefix="/api/admin")


def _int_arg(name: str, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    return int(raw)


# =============================================================================
# STUCK ORDERS
# =============================================================================

@recovery_bp.get("/recovery/orders")
@require_api_token("operator")
def list_stuck_orders_route():
    """
    List paid orders that never reached the marketplace.

    Query params:
    - lookback_days (default RECOVERY_LOOKBACK_DAYS)
    - limit (default RECOVERY_BATCH_LIMIT)
    """
    try:
        orders = recovery_service.list_stuck_orders(
            lookback_days=_int_arg("lookback_days"),
            limit=_int_arg("limit"),
        )
        return jsonify({"orders": orders, "count": len(orders)}), 200
    except ValueError:
        return jsonify({"error": "lookback_days and limit must be integers"}), 400
    except Exception:
        current_app.logger.exception("Failed to list stuck orders")
        return jsonify({"error": "Internal server error"}), 500


@recovery_bp.get("/recovery/orders/<order_id>")
@require_api_token("operator")
def get_recovery_order_route(order_id: str):
    """Order with items, notes and recovery history."""
    order = get_order(order_id)
    if order is None:
        return jsonify({"error": "Order not found"}), 404

    logs = (
        db.session.query(RecoveryLog)
        .filter_by(order_id=order_id)
        .order_by(RecoveryLog.id.desc())
        .all()
    )
    return jsonify({
        "order": order.to_dict(include_items=True),
        "notes": [n.to_dict() for n in order.notes],
        "recovery_logs": [log.to_dict() for log in logs],
    }), 200


@recovery_bp.post("/recovery/orders/<order_id>/retry")
@require_api_token("operator")
def retry_order_route(order_id: str):
    """
    Resubmit one order.

    Request body (optional):
    {
        "triggerSource": "manual_recovery"
    }

    Returns the recovery outcome: recovered, already_submitted, blocked or failed.
    """
    data = request.get_json(silent=True) or {}
    trigger_source = data.get("triggerSource") or TRIGGER_MANUAL_RECOVERY
    try:
        result = recovery_service.recover_order(order_id, trigger_source=trigger_source)
    except RecoveryError as e:
        status = 404 if "not found" in str(e) else 400
        return jsonify({"success": False, "error": str(e)}), status
    except Exception:
        current_app.logger.exception("Failed to recover order %s", order_id)
        return jsonify({"success": False, "error": "Internal server error"}), 500
    return jsonify(result), 200


@recovery_bp.post("/recovery/run")
@require_api_token("operator")
def run_recovery_route():
    """Resubmit every current candidate."""
    data = request.get_json(silent=True) or {}
    trigger_source = data.get("triggerSource") or TRIGGER_WEBHOOK_RECOVERY
    try:
        summary = recovery_service.recover_stuck_orders(trigger_source=trigger_source)
    except RecoveryError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Recovery sweep failed")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(summary), 200


# =============================================================================
# SWEEPS
# =============================================================================

@recovery_bp.post("/scheduled/release")
@require_api_token("operator")
def release_scheduled_route():
    try:
        summary = order_flow_service.release_scheduled_orders()
    except Exception:
        current_app.logger.exception("Scheduled release failed")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(summary), 200


@recovery_bp.post("/payments/reconcile")
@require_api_token("operator")
def reconcile_payments_route():
    try:
        summary = reconciliation_service.reconcile_pending_payments()
    except Exception:
        current_app.logger.exception("Payment reconciliation failed")
        return jsonify({"error": "Internal server error"}), 500
    return jsonify(summary), 200
