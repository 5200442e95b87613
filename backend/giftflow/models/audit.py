from __future__ import annotations

from ..extensions import db
from giftflow.time_utils import to_utc_z


VERIFICATION_ATTEMPTING = "attempting"
VERIFICATION_SUCCESS = "success"
VERIFICATION_FAILED = "failed"
VERIFICATION_DISCREPANCY = "discrepancy_found"


class VerificationAuditEntry(db.Model):
    """
    One attempt to reconcile a checkout session to an order.

    IMMUTABLE: Append-only. The only update allowed is closing the entry's
    own attempt (attempting -> success/failed) exactly once.
    """
    __tablename__ = "payment_verification_audit"
    __table_args__ = (
        db.Index("ix_verification_audit_session", "checkout_session_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True)

    checkout_session_id = db.Column(db.String(255), nullable=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)

    verification_method = db.Column(db.String(64), nullable=False)  # session_id, payment_intent_fallback, reconciliation_*
    status = db.Column(db.String(24), nullable=False, default=VERIFICATION_ATTEMPTING, index=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=1)
    details = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "checkout_session_id": self.checkout_session_id,
            "payment_intent_id": self.payment_intent_id,
            "verification_method": self.verification_method,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }


class RecoveryLog(db.Model):
    """Append-only record of each operator or sweep recovery attempt."""
    __tablename__ = "order_recovery_logs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=True, index=True)
    recovery_type = db.Column(db.String(64), nullable=False)
    trigger_source = db.Column(db.String(32), nullable=True)
    recovery_status = db.Column(db.String(16), nullable=False)  # completed, failed, skipped
    error_message = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "recovery_type": self.recovery_type,
            "trigger_source": self.trigger_source,
            "recovery_status": self.recovery_status,
            "error_message": self.error_message,
            "details": self.details,
            "created_at": to_utc_z(self.created_at),
        }
