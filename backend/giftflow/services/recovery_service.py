# Overview: Service-layer operations for order recovery; re-enters fulfillment for stuck orders.

"""
Recovery Service

WHY: Paid orders can get stuck before reaching the marketplace (webhook never
arrived, marketplace unavailable, account missing). Operators and the sweep
re-run the exact same submit_order() the normal flow uses.

DESIGN:
- Candidates: payment succeeded, status pending/processing, no marketplace id,
  created within the lookback window
- After ANY error, re-read the order before reporting: a marketplace id that
  appeared despite the error means the submission actually went through
- Every attempt writes a RecoveryLog
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, RecoveryLog
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    PAYMENT_STATUS_SUCCEEDED,
)
from .fulfillment_service import (
    FulfillmentError,
    TRIGGER_MANUAL_RECOVERY,
    TRIGGER_WEBHOOK_RECOVERY,
    VALID_TRIGGER_SOURCES,
    submit_order,
)
from .order_service import get_order
from giftflow.time_utils import utcnow


class RecoveryError(Exception):
    """Raised for recovery operation errors."""
    pass


RECOVERY_TYPE_RESUBMIT = "resubmit_to_marketplace"

OUTCOME_RECOVERED = "recovered"
OUTCOME_ALREADY_SUBMITTED = "already_submitted"
OUTCOME_BLOCKED = "blocked"
OUTCOME_FAILED = "failed"

LOG_COMPLETED = "completed"
LOG_FAILED = "failed"
LOG_SKIPPED = "skipped"

STUCK_STATUSES = [ORDER_STATUS_PENDING, ORDER_STATUS_PROCESSING]


def _candidate_query(lookback_days: int):
    cutoff = utcnow() - timedelta(days=lookback_days)
    return db.session.query(Order).filter(
        Order.payment_status == PAYMENT_STATUS_SUCCEEDED,
        Order.status.in_(STUCK_STATUSES),
        Order.marketplace_order_id.is_(None),
        Order.created_at >= cutoff,
    )


def _candidate_dict(order: Order, now) -> dict:
    age_hours = None
    if order.created_at is not None:
        age_hours = round((now - order.created_at).total_seconds() / 3600, 1)
    return {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "marketplace_status": order.marketplace_status,
        "total_amount": str(order.total_amount),
        "currency": order.currency,
        "customer": order.customer_identifier,
        "submission_attempts": order.submission_attempts,
        "last_error": order.last_error,
        "age_hours": age_hours,
    }


def list_stuck_orders(*, lookback_days: int | None = None, limit: int | None = None) -> list[dict]:
    """Newest first."""
    cfg = current_app.config
    if lookback_days is None:
        lookback_days = int(cfg.get("RECOVERY_LOOKBACK_DAYS", 7))
    if limit is None:
        limit = int(cfg.get("RECOVERY_BATCH_LIMIT", 20))
    now = utcnow()
    orders = (
        _candidate_query(lookback_days)
        .order_by(Order.created_at.desc())
        .limit(limit)
        .all()
    )
    return [_candidate_dict(o, now) for o in orders]


def _write_log(order_id: str, *, trigger_source: str, status: str, error: str | None = None, details: dict | None = None) -> RecoveryLog:
    log = RecoveryLog(
        order_id=order_id,
        recovery_type=RECOVERY_TYPE_RESUBMIT,
        trigger_source=trigger_source,
        recovery_status=status,
        error_message=error,
        details=details,
        created_at=utcnow(),
    )
    db.session.add(log)
    db.session.commit()
    return log


def recover_order(order_id: str, *, trigger_source: str = TRIGGER_MANUAL_RECOVERY, marketplace=None, notifier=None) -> dict:
    """
    Resubmit one order through the normal submitter.

    Returns:
        {order_id, outcome, success, marketplace_order_id?, error?, reasons?}
    Raises:
        RecoveryError: unknown order or trigger source
    """
    if trigger_source not in VALID_TRIGGER_SOURCES:
        raise RecoveryError(f"Invalid trigger source: {trigger_source}")
    if get_order(order_id) is None:
        raise RecoveryError(f"Order {order_id} not found")

    try:
        result = submit_order(
            order_id,
            trigger_source=trigger_source,
            marketplace=marketplace,
            notifier=notifier,
        )
    except Exception as e:
        # Transport and logical errors differ: check what actually happened.
        db.session.rollback()
        db.session.expire_all()
        current = get_order(order_id)
        if current is not None and current.marketplace_order_id:
            current_app.logger.warning(
                "Recovery of order %s raised %s but marketplace id %s is present; treating as recovered",
                order_id, type(e).__name__, current.marketplace_order_id,
            )
            _write_log(order_id, trigger_source=trigger_source, status=LOG_COMPLETED, error=str(e),
                       details={"marketplace_order_id": current.marketplace_order_id, "verified_after_error": True})
            return {
                "order_id": order_id,
                "success": True,
                "outcome": OUTCOME_RECOVERED,
                "marketplace_order_id": current.marketplace_order_id,
                "verified_after_error": True,
            }

        if not isinstance(e, FulfillmentError):
            current_app.logger.exception("Recovery of order %s failed unexpectedly", order_id)
        else:
            current_app.logger.warning("Recovery of order %s failed: %s", order_id, e)
        _write_log(order_id, trigger_source=trigger_source, status=LOG_FAILED, error=str(e),
                   details={"error_type": type(e).__name__})
        return {
            "order_id": order_id,
            "success": False,
            "outcome": OUTCOME_FAILED,
            "error": str(e),
            "error_type": type(e).__name__,
        }

    if result.blocked:
        _write_log(order_id, trigger_source=trigger_source, status=LOG_SKIPPED,
                   error="; ".join(result.reasons), details={"blocked": True, "reasons": result.reasons})
        return {
            "order_id": order_id,
            "success": False,
            "outcome": OUTCOME_BLOCKED,
            "reasons": list(result.reasons),
        }

    outcome = OUTCOME_ALREADY_SUBMITTED if result.already_submitted else OUTCOME_RECOVERED
    _write_log(order_id, trigger_source=trigger_source,
               status=LOG_SKIPPED if result.already_submitted else LOG_COMPLETED,
               details={"marketplace_order_id": result.marketplace_order_id})
    current_app.logger.info("Recovery of order %s: %s (%s)", order_id, outcome, result.marketplace_order_id)
    return {
        "order_id": order_id,
        "success": True,
        "outcome": outcome,
        "marketplace_order_id": result.marketplace_order_id,
    }


def recover_stuck_orders(*, trigger_source: str = TRIGGER_WEBHOOK_RECOVERY, lookback_days: int | None = None, limit: int | None = None, marketplace=None, notifier=None) -> dict:
    candidates = list_stuck_orders(lookback_days=lookback_days, limit=limit)
    results = [
        recover_order(c["id"], trigger_source=trigger_source, marketplace=marketplace, notifier=notifier)
        for c in candidates
    ]
    summary = {
        "candidates": len(candidates),
        "recovered": sum(1 for r in results if r["outcome"] == OUTCOME_RECOVERED),
        "already_submitted": sum(1 for r in results if r["outcome"] == OUTCOME_ALREADY_SUBMITTED),
        "blocked": sum(1 for r in results if r["outcome"] == OUTCOME_BLOCKED),
        "failed": sum(1 for r in results if r["outcome"] == OUTCOME_FAILED),
        "results": results,
    }
    current_app.logger.info(
        "Recovery sweep (%s): candidates=%s recovered=%s failed=%s blocked=%s",
        trigger_source, summary["candidates"], summary["recovered"], summary["failed"], summary["blocked"],
    )
    return summary
