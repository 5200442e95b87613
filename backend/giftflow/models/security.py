from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from giftflow.time_utils import to_utc_z, to_iso_date


SEVERITY_INFO = "info"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"


class SecurityEvent(db.Model):
    """
    Guard layer and API access audit log.

    WHY: Every failed guard check, suspicious pattern and fulfillment failure
    is kept for operator review.

    IMMUTABLE: Never update or delete. Append-only for audit integrity
    (retention cleanup is the only exception).
    """
    __tablename__ = "security_events"
    __table_args__ = (
        db.Index("ix_security_events_user_type", "user_id", "event_type"),
        db.Index("ix_security_events_occurred", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.String(64), nullable=True, index=True)  # Nullable for anonymous callers
    order_id = db.Column(db.String(36), nullable=True, index=True)

    # Event classification
    event_type = db.Column(db.String(64), nullable=False, index=True)  # rate_limit_exceeded, cost_limit_exceeded, ...
    severity = db.Column(db.String(16), nullable=False, default=SEVERITY_INFO, index=True)

    details = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "event_type": self.event_type,
            "severity": self.severity,
            "details": self.details,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class UserOrderCounter(db.Model):
    """
    Per-user rolling counters for the guard layer.

    CONCURRENCY: Shared mutable state across invocations. Always mutate under
    lock_for_update() inside run_with_retry(); version_id catches writers
    on databases that ignore FOR UPDATE.

    Windows roll over lazily: a stale window start means the count is zero.
    """
    __tablename__ = "user_order_counters"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, unique=True)

    orders_this_hour = db.Column(db.Integer, nullable=False, default=0)
    hour_window_start = db.Column(db.DateTime(timezone=True), nullable=True)
    orders_today = db.Column(db.Integer, nullable=False, default=0)
    day_window_start = db.Column(db.Date, nullable=True)

    consecutive_failures = db.Column(db.Integer, nullable=False, default=0)

    daily_total = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    daily_window = db.Column(db.Date, nullable=True)
    monthly_total = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    monthly_window = db.Column(db.String(7), nullable=True)  # YYYY-MM

    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "orders_this_hour": self.orders_this_hour,
            "hour_window_start": to_utc_z(self.hour_window_start),
            "orders_today": self.orders_today,
            "day_window_start": to_iso_date(self.day_window_start),
            "consecutive_failures": self.consecutive_failures,
            "daily_total": str(self.daily_total) if self.daily_total is not None else None,
            "daily_window": to_iso_date(self.daily_window),
            "monthly_total": str(self.monthly_total) if self.monthly_total is not None else None,
            "monthly_window": self.monthly_window,
            "updated_at": to_utc_z(self.updated_at),
        }


class SubmissionFingerprint(db.Model):
    """Hash of each submitted order's content, for duplicate detection."""
    __tablename__ = "submission_fingerprints"
    __table_args__ = (
        db.Index("ix_submission_fingerprints_user_hash", "user_id", "order_hash"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False)
    order_id = db.Column(db.String(36), nullable=False, index=True)
    order_hash = db.Column(db.String(64), nullable=False)
    amount = db.Column(db.Numeric(12, 2), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
