# Overview: Service-layer orchestration for paid checkouts; verify, schedule, submit.

"""
Order Flow Service

WHY: Checkout redirect, payment webhook, reconciliation and the scheduled
release sweep all drive the same verify -> schedule -> submit pipeline.

FLOW:
1. verify_checkout_session (not paid -> stop; already processed -> stop)
2. decide_delivery (deferred -> persist scheduled state, stop)
3. submit_order (failures are reported in `fulfillment`, never fail the
   verification; the order stays visible to recovery)
"""

from __future__ import annotations

from datetime import date

from flask import current_app

from ..extensions import db
from ..models import Order
from ..models.orders import (
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SCHEDULED,
    PAYMENT_STATUS_SUCCEEDED,
)
from .concurrency import compare_and_set
from .delivery_scheduler import apply_schedule, decide_for_order
from .fulfillment_service import (
    FulfillmentError,
    TRIGGER_CHECKOUT,
    TRIGGER_SCHEDULED_RELEASE,
    submit_order,
)
from .order_service import append_note, get_order
from .payment_verification_service import verify_checkout_session
from giftflow.time_utils import to_iso_date, utcnow


def run_fulfillment(order_id: str, *, trigger_source: str, marketplace=None, notifier=None) -> dict:
    """submit_order() with failures folded into a result dict."""
    try:
        result = submit_order(
            order_id,
            trigger_source=trigger_source,
            marketplace=marketplace,
            notifier=notifier,
        )
    except FulfillmentError as e:
        current_app.logger.warning(
            "Fulfillment for order %s failed after verification (%s): %s", order_id, trigger_source, e
        )
        return {"success": False, "error": str(e), "error_type": type(e).__name__}
    return result.to_dict()


def schedule_or_submit(
    order: Order,
    *,
    trigger_source: str,
    session_metadata: dict | None = None,
    marketplace=None,
    notifier=None,
) -> dict:
    """Steps 2-3 of the flow for an order whose payment already succeeded."""
    decision = decide_for_order(order, session_metadata=session_metadata)
    if decision.should_defer:
        apply_schedule(order, decision)
        return {
            "scheduled": True,
            "processing_date": to_iso_date(decision.processing_date),
            "scheduled_delivery_date": to_iso_date(decision.earliest_date),
        }

    fulfillment = run_fulfillment(
        order.id, trigger_source=trigger_source, marketplace=marketplace, notifier=notifier
    )
    return {"scheduled": False, "fulfillment": fulfillment}


def process_paid_session(
    session_id: str,
    *,
    trigger_source: str = TRIGGER_CHECKOUT,
    payments=None,
    marketplace=None,
    notifier=None,
) -> dict:
    """
    Verify a checkout session and hand the order on.

    Returns the verify-session response body:
    {success, order_number?, payment_status, scheduled?, processing_date?, fulfillment?}

    Raises whatever verify_checkout_session raises (provider failure,
    missing order, DB failure).
    """
    verification = verify_checkout_session(session_id, payments=payments)

    if not verification.success:
        return {
            "success": False,
            "payment_status": verification.payment_status,
            "error": "Payment not completed",
        }

    response = {
        "success": True,
        "order_id": verification.order_id,
        "order_number": verification.order_number,
        "payment_status": verification.payment_status,
    }

    if verification.already_processed:
        response["already_processed"] = True
        return response

    order = get_order(verification.order_id)
    response.update(
        schedule_or_submit(
            order,
            trigger_source=trigger_source,
            session_metadata=verification.session_metadata,
            marketplace=marketplace,
            notifier=notifier,
        )
    )
    return response


# =============================================================================
# SCHEDULED RELEASE
# =============================================================================

def release_scheduled_orders(*, today: date | None = None, limit: int | None = None, marketplace=None, notifier=None) -> dict:
    """
    Re-run the scheduler over held orders and submit the ones now due.

    The release is a conditional scheduled -> processing update, so two
    concurrent sweeps cannot both submit the same order.
    """
    query = (
        db.session.query(Order)
        .filter(
            Order.status == ORDER_STATUS_SCHEDULED,
            Order.payment_status == PAYMENT_STATUS_SUCCEEDED,
            Order.marketplace_order_id.is_(None),
        )
        .order_by(Order.scheduled_delivery_date.asc(), Order.created_at.asc())
    )
    if limit:
        query = query.limit(limit)
    orders = query.all()

    summary = {"checked": len(orders), "released": 0, "still_scheduled": 0, "submitted": 0, "failed": 0, "results": []}

    for order in orders:
        order_id = order.id
        decision = decide_for_order(order, today=today)
        if decision.should_defer:
            summary["still_scheduled"] += 1
            continue

        won = compare_and_set(
            Order, order_id,
            where=[Order.status == ORDER_STATUS_SCHEDULED],
            values={Order.status: ORDER_STATUS_PROCESSING, Order.updated_at: utcnow()},
        )
        if not won:
            db.session.rollback()
            continue
        append_note(order_id, "Scheduled order released for submission")
        db.session.commit()
        summary["released"] += 1

        fulfillment = run_fulfillment(
            order_id, trigger_source=TRIGGER_SCHEDULED_RELEASE, marketplace=marketplace, notifier=notifier
        )
        if fulfillment.get("success"):
            summary["submitted"] += 1
        else:
            summary["failed"] += 1
        summary["results"].append({"order_id": order_id, **fulfillment})

    current_app.logger.info(
        "Scheduled release: checked=%s released=%s submitted=%s failed=%s",
        summary["checked"], summary["released"], summary["submitted"], summary["failed"],
    )
    return summary
