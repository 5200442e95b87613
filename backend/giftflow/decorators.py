# Overview: Request decorators for API routes.

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request

from .extensions import db
from .services.order_guard_service import log_security_event
from .models.security import SEVERITY_WARNING


TOKEN_SCOPES = {
    "operator": "OPERATOR_API_TOKEN",
    "service": "SERVICE_API_TOKEN",
}


def require_api_token(scope: str):
    """
    Require a static bearer token for operator or service endpoints.

    Operator tokens are also accepted on service endpoints.

    SECURITY: Returns 401 and writes an `api_access_denied` SecurityEvent if:
    - No Authorization header
    - Token does not match (constant-time compare)
    Returns 503 when no token is configured for the scope.
    """
    if scope not in TOKEN_SCOPES:
        raise ValueError(f"Unknown token scope: {scope}")

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            accepted = [current_app.config.get(TOKEN_SCOPES[scope]) or ""]
            if scope == "service":
                accepted.append(current_app.config.get(TOKEN_SCOPES["operator"]) or "")
            accepted = [t for t in accepted if t]
            if not accepted:
                current_app.logger.error("No %s API token configured; refusing %s", scope, request.path)
                return jsonify({"error": "Endpoint not configured"}), 503

            auth_header = request.headers.get("Authorization") or ""
            token = auth_header.split(" ", 1)[1] if auth_header.startswith("Bearer ") else ""

            if not token or not any(hmac.compare_digest(token, t) for t in accepted):
                log_security_event(
                    event_type="api_access_denied",
                    severity=SEVERITY_WARNING,
                    details={
                        "scope": scope,
                        "path": request.path,
                        "method": request.method,
                        "ip_address": request.remote_addr,
                        "user_agent": request.headers.get("User-Agent"),
                        "reason": "missing token" if not token else "invalid token",
                    },
                )
                db.session.commit()
                return jsonify({"error": "Authentication required"}), 401

            g.api_scope = scope
            return f(*args, **kwargs)

        return decorated_function
    return decorator
