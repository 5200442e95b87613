# Overview: Service-layer operations for payment verification; reconciles paid checkout sessions to orders.

"""
Payment Verification Service

WHY: The only path from a paid checkout session to an order in `processing`.
Every attempt leaves a VerificationAuditEntry so support can reconstruct how
(or whether) a session was matched.

DESIGN PRINCIPLES:
- Provider says "not paid" -> structured negative result, not an exception
- Match by checkout_session_id, fall back to payment_intent_id
- No matching order is a data-integrity failure: log critical, raise, never
  create an order
- The pending -> succeeded transition is one conditional UPDATE; a second
  verifier for the same session sees zero rows and reports already_processed
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Order, VerificationAuditEntry
from ..models.audit import (
    VERIFICATION_ATTEMPTING,
    VERIFICATION_FAILED,
    VERIFICATION_SUCCESS,
)
from ..models.orders import (
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    PAYMENT_STATUS_SUCCEEDED,
)
from ..integrations import get_payments_provider
from ..integrations.payments.base import CheckoutSession, PaymentProviderUnavailable
from .concurrency import compare_and_set
from .order_service import append_note, find_order_by_payment_intent, find_order_by_session
from giftflow.time_utils import utcnow


class PaymentVerificationError(Exception):
    """Raised for payment verification errors."""
    pass


class PaymentProviderError(PaymentVerificationError):
    """The payment provider could not confirm the session."""
    pass


class OrderNotFoundError(PaymentVerificationError):
    """A paid session has no matching order. Data-integrity failure."""
    pass


METHOD_SESSION_ID = "session_id"
METHOD_PAYMENT_INTENT = "payment_intent_fallback"

PROVIDER_PAID = "paid"


@dataclass
class VerificationResult:
    success: bool
    payment_status: str
    order_id: str | None = None
    order_number: str | None = None
    already_processed: bool = False
    verification_method: str | None = None
    session_metadata: dict = field(default_factory=dict)
    audit_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "payment_status": self.payment_status,
            "order_id": self.order_id,
            "order_number": self.order_number,
            "already_processed": self.already_processed,
            "verification_method": self.verification_method,
        }


# =============================================================================
# AUDIT TRAIL
# =============================================================================

def _prior_attempts(session_id: str) -> int:
    return (
        db.session.query(VerificationAuditEntry)
        .filter(VerificationAuditEntry.checkout_session_id == session_id)
        .count()
    )


def _open_audit(session: CheckoutSession) -> VerificationAuditEntry:
    entry = VerificationAuditEntry(
        checkout_session_id=session.id,
        payment_intent_id=session.payment_intent_id,
        verification_method=METHOD_SESSION_ID,
        status=VERIFICATION_ATTEMPTING,
        attempt_count=_prior_attempts(session.id) + 1,
        details={"provider_payment_status": session.payment_status},
        created_at=utcnow(),
    )
    db.session.add(entry)
    db.session.commit()
    return entry


def _close_audit(entry: VerificationAuditEntry, status: str, *, order_id: str | None = None, method: str | None = None, **details) -> None:
    # Closes exactly once: a closed entry is never touched again.
    if entry.status != VERIFICATION_ATTEMPTING:
        return
    entry.status = status
    entry.completed_at = utcnow()
    if order_id:
        entry.order_id = order_id
    if method:
        entry.verification_method = method
    merged = dict(entry.details or {})
    merged.update({k: v for k, v in details.items() if v is not None})
    entry.details = merged
    db.session.commit()


def amount_discrepancy(order: Order, session: CheckoutSession) -> dict | None:
    """Provider amount (cents) vs order total. None when they agree or the provider gave none."""
    if session.amount_total is None:
        return None
    provider_amount = (Decimal(session.amount_total) / Decimal(100)).quantize(Decimal("0.01"))
    order_amount = Decimal(order.total_amount or 0).quantize(Decimal("0.01"))
    if provider_amount == order_amount:
        return None
    return {
        "provider_amount": str(provider_amount),
        "order_amount": str(order_amount),
        "difference": str(provider_amount - order_amount),
    }


# =============================================================================
# VERIFICATION
# =============================================================================

def _match_order(session: CheckoutSession) -> tuple[Order | None, str | None]:
    order = find_order_by_session(session.id)
    if order is not None:
        return order, METHOD_SESSION_ID
    if session.payment_intent_id:
        order = find_order_by_payment_intent(session.payment_intent_id)
        if order is not None:
            return order, METHOD_PAYMENT_INTENT
    return None, None


def verify_checkout_session(session_id: str, *, payments=None) -> VerificationResult:
    """
    Confirm a checkout session is paid and move its order to processing.

    Returns:
        VerificationResult. success=False only for "provider says not paid".

    Raises:
        PaymentProviderError: provider lookup failed
        OrderNotFoundError: paid session with no order (critical)
        SQLAlchemyError: the order update failed (after a failed audit entry)
    """
    session_id = (session_id or "").strip()
    if not session_id:
        raise PaymentVerificationError("session_id is required")

    payments = payments or get_payments_provider()
    try:
        session = payments.retrieve_checkout_session(session_id)
    except PaymentProviderUnavailable as e:
        current_app.logger.error("Checkout session %s lookup failed: %s", session_id, e)
        raise PaymentProviderError(str(e)) from e

    if session.payment_status != PROVIDER_PAID:
        current_app.logger.info(
            "Checkout session %s not paid (status=%s)", session_id, session.payment_status
        )
        return VerificationResult(
            success=False,
            payment_status=session.payment_status,
            session_metadata=session.metadata,
        )

    audit = _open_audit(session)

    order, method = _match_order(session)
    if order is None:
        _close_audit(audit, VERIFICATION_FAILED, error="order_not_found")
        current_app.logger.critical(
            "DATA INTEGRITY: paid checkout session %s (payment_intent=%s) has no matching order",
            session_id, session.payment_intent_id,
        )
        raise OrderNotFoundError(f"No order found for checkout session {session_id}")

    order_id = order.id
    discrepancy = amount_discrepancy(order, session)
    if discrepancy:
        current_app.logger.warning("Order %s amount discrepancy: %s", order_id, discrepancy)

    if order.payment_status == PAYMENT_STATUS_SUCCEEDED:
        _close_audit(audit, VERIFICATION_SUCCESS, order_id=order_id, method=method,
                     already_processed=True, amount_discrepancy=discrepancy)
        return VerificationResult(
            success=True,
            payment_status=session.payment_status,
            order_id=order_id,
            order_number=order.order_number,
            already_processed=True,
            verification_method=method,
            session_metadata=session.metadata,
            audit_id=audit.id,
        )

    values = {
        Order.payment_status: PAYMENT_STATUS_SUCCEEDED,
        Order.updated_at: utcnow(),
    }
    if order.status == ORDER_STATUS_PENDING:
        values[Order.status] = ORDER_STATUS_PROCESSING
    if method == METHOD_PAYMENT_INTENT and not order.checkout_session_id:
        values[Order.checkout_session_id] = session.id
    if session.payment_intent_id and not order.payment_intent_id:
        values[Order.payment_intent_id] = session.payment_intent_id

    try:
        won = compare_and_set(
            Order, order_id,
            where=[Order.payment_status != PAYMENT_STATUS_SUCCEEDED],
            values=values,
        )
        if won:
            append_note(order_id, f"Payment verified via {method} (session {session_id})")
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.exception("Order %s payment update failed", order_id)
        _close_audit(audit, VERIFICATION_FAILED, order_id=order_id, method=method, error=str(e))
        raise

    _close_audit(audit, VERIFICATION_SUCCESS, order_id=order_id, method=method,
                 already_processed=not won, amount_discrepancy=discrepancy)

    if won:
        current_app.logger.info("Order %s payment verified via %s", order_id, method)
    else:
        current_app.logger.info("Order %s already verified by a concurrent caller", order_id)

    return VerificationResult(
        success=True,
        payment_status=session.payment_status,
        order_id=order_id,
        order_number=order.order_number,
        already_processed=not won,
        verification_method=method,
        session_metadata=session.metadata,
        audit_id=audit.id,
    )
