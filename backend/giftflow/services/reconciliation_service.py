# Overview: Service-layer operations for payment reconciliation; catches payments the checkout flow missed.

"""
Payment Reconciliation Service

WHY: A customer can pay and close the tab before the verify-session call
lands. Pending orders that carry a payment intent are re-checked against the
provider; succeeded payments are corrected and handed to the normal
schedule/submit flow.

Every check leaves a VerificationAuditEntry:
- reconciliation_check         provider state inspected (discrepancy_found on mismatch)
- reconciliation_auto_correct  payment_status corrected to succeeded
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import Order, VerificationAuditEntry
from ..models.audit import VERIFICATION_DISCREPANCY, VERIFICATION_SUCCESS, VERIFICATION_FAILED
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_SUCCEEDED,
)
from ..integrations import get_payments_provider
from ..integrations.payments.base import PaymentProviderUnavailable
from .concurrency import compare_and_set
from .fulfillment_service import TRIGGER_RECONCILIATION
from .order_flow_service import schedule_or_submit
from .order_service import append_note, get_order
from giftflow.time_utils import utcnow


METHOD_RECONCILIATION_CHECK = "reconciliation_check"
METHOD_RECONCILIATION_AUTO_CORRECT = "reconciliation_auto_correct"

INTENT_SUCCEEDED = "succeeded"


def _audit(order: Order, method: str, status: str, details: dict) -> None:
    now = utcnow()
    db.session.add(VerificationAuditEntry(
        order_id=order.id,
        checkout_session_id=order.checkout_session_id,
        payment_intent_id=order.payment_intent_id,
        verification_method=method,
        status=status,
        attempt_count=1,
        details=details,
        created_at=now,
        completed_at=now,
    ))


def _discrepancies(order: Order, intent) -> list[dict]:
    found = []
    if intent.status == INTENT_SUCCEEDED and order.payment_status != PAYMENT_STATUS_SUCCEEDED:
        found.append({
            "type": "status_mismatch",
            "order_payment_status": order.payment_status,
            "provider_status": intent.status,
        })
    if intent.amount is not None:
        provider_amount = (Decimal(intent.amount) / Decimal(100)).quantize(Decimal("0.01"))
        order_amount = Decimal(order.total_amount or 0).quantize(Decimal("0.01"))
        if provider_amount != order_amount:
            found.append({
                "type": "amount_mismatch",
                "order_amount": str(order_amount),
                "provider_amount": str(provider_amount),
            })
    return found


def reconcile_order(order: Order, *, payments, marketplace=None, notifier=None) -> dict:
    order_id = order.id
    try:
        intent = payments.retrieve_payment_intent(order.payment_intent_id)
    except PaymentProviderUnavailable as e:
        _audit(order, METHOD_RECONCILIATION_CHECK, VERIFICATION_FAILED, {"error": str(e)})
        db.session.commit()
        current_app.logger.warning("Reconciliation lookup failed for order %s: %s", order_id, e)
        return {"order_id": order_id, "outcome": "error", "error": str(e)}

    discrepancies = _discrepancies(order, intent)
    _audit(
        order,
        METHOD_RECONCILIATION_CHECK,
        VERIFICATION_DISCREPANCY if discrepancies else VERIFICATION_SUCCESS,
        {"provider_status": intent.status, "discrepancies": discrepancies},
    )
    db.session.commit()

    if intent.status != INTENT_SUCCEEDED:
        return {"order_id": order_id, "outcome": "unpaid", "provider_status": intent.status,
                "discrepancies": discrepancies}

    won = compare_and_set(
        Order, order_id,
        where=[Order.payment_status == PAYMENT_STATUS_PENDING, Order.status == ORDER_STATUS_PENDING],
        values={
            Order.payment_status: PAYMENT_STATUS_SUCCEEDED,
            Order.status: ORDER_STATUS_PROCESSING,
            Order.updated_at: utcnow(),
        },
    )
    if not won:
        db.session.rollback()
        return {"order_id": order_id, "outcome": "already_processed", "discrepancies": discrepancies}

    order = get_order(order_id)
    _audit(order, METHOD_RECONCILIATION_AUTO_CORRECT, VERIFICATION_SUCCESS,
           {"provider_status": intent.status, "previous_payment_status": PAYMENT_STATUS_PENDING})
    append_note(order_id, f"Payment confirmed by reconciliation (payment intent {order.payment_intent_id})")
    db.session.commit()
    current_app.logger.warning("Reconciliation corrected order %s to payment succeeded", order_id)

    flow = schedule_or_submit(
        get_order(order_id),
        trigger_source=TRIGGER_RECONCILIATION,
        marketplace=marketplace,
        notifier=notifier,
    )
    return {"order_id": order_id, "outcome": "corrected", "discrepancies": discrepancies, **flow}


def reconcile_pending_payments(*, lookback_hours: int | None = None, limit: int | None = None, payments=None, marketplace=None, notifier=None) -> dict:
    cfg = current_app.config
    if lookback_hours is None:
        lookback_hours = int(cfg.get("RECONCILIATION_LOOKBACK_HOURS", 24))
    if limit is None:
        limit = int(cfg.get("RECONCILIATION_BATCH_LIMIT", 50))
    payments = payments or get_payments_provider()

    cutoff = utcnow() - timedelta(hours=lookback_hours)
    orders = (
        db.session.query(Order)
        .filter(
            Order.payment_status == PAYMENT_STATUS_PENDING,
            Order.payment_intent_id.isnot(None),
            Order.created_at >= cutoff,
        )
        .order_by(Order.created_at.asc())
        .limit(limit)
        .all()
    )

    results = [
        reconcile_order(order, payments=payments, marketplace=marketplace, notifier=notifier)
        for order in orders
    ]
    summary = {
        "checked": len(results),
        "corrected": sum(1 for r in results if r["outcome"] == "corrected"),
        "discrepancies": sum(1 for r in results if r.get("discrepancies")),
        "errors": sum(1 for r in results if r["outcome"] == "error"),
        "results": results,
    }
    current_app.logger.info(
        "Payment reconciliation: checked=%s corrected=%s discrepancies=%s errors=%s",
        summary["checked"], summary["corrected"], summary["discrepancies"], summary["errors"],
    )
    return summary
