# Overview: Flask API routes for guard layer inspection.

from flask import Blueprint, jsonify, current_app

from ..decorators import require_api_token
from ..services import order_guard_service


security_bp = Blueprint("security", __name__, url_prefix="/api/admin/security")


@security_bp.get("/users/<user_id>")
@require_api_token("operator")
def user_security_status_route(user_id: str):
    """Guard counters, limits and recent security events for one user."""
    try:
        return jsonify(order_guard_service.get_user_security_status(user_id)), 200
    except Exception:
        current_app.logger.exception("Failed to load security status for %s", user_id)
        return jsonify({"error": "Internal server error"}), 500
