# backend/giftflow/routes/system.py
"""
System health and version endpoints.

Health covers the database and whether each external integration is
configured. No external call is made; a misconfigured integration is
reported as degraded, not unhealthy.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..integrations import MARKETPLACE_KEY, NOTIFICATIONS_KEY, PAYMENTS_KEY
from ..integrations.payments.factory import payments_health
from ..models import MarketplaceAccount, Order
from giftflow.time_utils import utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        account_count = db.session.query(MarketplaceAccount).count()

        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "marketplace_accounts": account_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_integrations_health() -> dict:
    built = {
        "payments": current_app.extensions.get(PAYMENTS_KEY) is not None,
        "marketplace": current_app.extensions.get(MARKETPLACE_KEY) is not None,
        "notifications": current_app.extensions.get(NOTIFICATIONS_KEY) is not None,
    }
    payments = payments_health(current_app.config)
    missing = [name for name, ok in built.items() if not ok]

    if missing or payments["status"] != "configured":
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "details": {
            "available": built,
            "payments": payments,
        }
    }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    integrations_health = check_integrations_health()

    all_checks = [database_health, integrations_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status = "unhealthy"
        http_status = 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "integrations": integrations_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    """
    Version endpoint for deployment debugging.

    Does NOT expose secret keys, credentials or internal paths.
    """
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": API_VERSION,
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
