# Overview: Service-layer operations for the fulfillment guard; rate, cost, duplicate and retry gates.

"""
Order Guard Service

WHY: Every marketplace submission spends real money on the business card.
Four independent gates must all pass before fulfillment_service is allowed
to call the marketplace, and every failure leaves a SecurityEvent.

CHECKS:
1. Rate limit      orders this hour / today           fails OPEN on lookup error
2. Cost limit      projected daily / monthly spend     fails CLOSED
3. Validation      duplicate hash + suspicious policy  fails CLOSED
4. Retry abuse     retries only                        fails CLOSED
+  Behavior        advisory, never blocks              errors ignored (logged)

CONCURRENCY:
- UserOrderCounter is shared per-user state. Mutations happen under
  lock_for_update() inside run_with_retry(); never read-then-write.
- Windows roll over lazily; a stale window start reads as zero.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Order, SecurityEvent, SubmissionFingerprint, UserOrderCounter
from ..models.security import SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING
from .concurrency import get_or_create, lock_for_update, run_with_retry
from giftflow.time_utils import utcnow


class GuardError(Exception):
    """Raised for guard layer errors."""
    pass


# =============================================================================
# EVENT TYPES (CONSTANTS)
# =============================================================================

EVENT_RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
EVENT_COST_LIMIT_EXCEEDED = "cost_limit_exceeded"
EVENT_VALIDATION_FAILED = "validation_failed"
EVENT_RETRY_ABUSE = "retry_abuse"
EVENT_SUSPICIOUS_BEHAVIOR = "suspicious_behavior"
EVENT_ORDER_FAILURE = "order_failure"

GUEST_SUBJECT = "guest"

_LOG_LEVELS = {
    SEVERITY_INFO: logging.INFO,
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_CRITICAL: logging.CRITICAL,
}


# =============================================================================
# TYPES
# =============================================================================

@dataclass
class GuardLimits:
    max_orders_per_hour: int = 5
    max_orders_per_day: int = 20
    daily_cost_limit: Decimal = Decimal("500.00")
    monthly_cost_limit: Decimal = Decimal("2000.00")
    cost_warning_ratio: Decimal = Decimal("0.8")
    duplicate_window_hours: int = 24
    suspicious_duplicate_count: int = 3
    max_retries: int = 3
    max_consecutive_failures: int = 5
    behavior_max_hourly_orders: int = 5
    behavior_max_hourly_amount: Decimal = Decimal("1000.00")
    behavior_rapid_minutes: int = 5

    @classmethod
    def from_config(cls, config) -> "GuardLimits":
        return cls(
            max_orders_per_hour=int(config.get("GUARD_MAX_ORDERS_PER_HOUR", 5)),
            max_orders_per_day=int(config.get("GUARD_MAX_ORDERS_PER_DAY", 20)),
            daily_cost_limit=Decimal(str(config.get("GUARD_DAILY_COST_LIMIT", "500.00"))),
            monthly_cost_limit=Decimal(str(config.get("GUARD_MONTHLY_COST_LIMIT", "2000.00"))),
            cost_warning_ratio=Decimal(str(config.get("GUARD_COST_WARNING_RATIO", "0.8"))),
            duplicate_window_hours=int(config.get("GUARD_DUPLICATE_WINDOW_HOURS", 24)),
            suspicious_duplicate_count=int(config.get("GUARD_SUSPICIOUS_DUPLICATE_COUNT", 3)),
            max_retries=int(config.get("GUARD_MAX_RETRIES", 3)),
            max_consecutive_failures=int(config.get("GUARD_MAX_CONSECUTIVE_FAILURES", 5)),
            behavior_max_hourly_orders=int(config.get("GUARD_BEHAVIOR_MAX_HOURLY_ORDERS", 5)),
            behavior_max_hourly_amount=Decimal(str(config.get("GUARD_BEHAVIOR_MAX_HOURLY_AMOUNT", "1000.00"))),
            behavior_rapid_minutes=int(config.get("GUARD_BEHAVIOR_RAPID_MINUTES", 5)),
        )


@dataclass
class GuardContext:
    user_id: str
    order_id: str
    total_amount: Decimal
    items: list = field(default_factory=list)  # [{product_id, quantity}]
    shipping_address: dict | None = None
    is_retry: bool = False
    retry_count: int = 0


@dataclass
class GuardResult:
    passed: bool = True
    blocked: bool = False
    warnings: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    def block(self, reason: str) -> None:
        self.passed = False
        self.blocked = True
        self.errors.append(reason)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "blocked": self.blocked,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "metadata": dict(self.metadata),
        }


# (context, order_hash, duplicate_count, limits) -> reason or None
SuspiciousPolicy = Callable[[GuardContext, str, int, GuardLimits], Optional[str]]


def default_suspicious_policy(context: GuardContext, order_hash: str, duplicate_count: int, limits: GuardLimits) -> str | None:
    if Decimal(context.total_amount or 0) <= 0:
        return "Order amount must be positive"
    if duplicate_count >= limits.suspicious_duplicate_count:
        return f"Identical order submitted {duplicate_count} times in {limits.duplicate_window_hours}h"
    return None


# =============================================================================
# HELPERS
# =============================================================================

def guard_subject(order: Order) -> str:
    """Counters are keyed by user id; guest checkouts fall back to email."""
    return order.user_id or order.customer_email or GUEST_SUBJECT


def hour_window(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def month_window(now: datetime) -> str:
    return f"{now:%Y-%m}"


def compute_order_hash(items: list, shipping_address: dict | None, amount) -> str:
    """sha256 over canonical JSON of {products sorted, shipping, amount}."""
    products = sorted(
        (
            {"id": str(item.get("product_id")), "quantity": int(item.get("quantity", 1))}
            for item in (items or [])
        ),
        key=lambda p: (p["id"], p["quantity"]),
    )
    payload = {
        "products": products,
        "shipping": shipping_address or {},
        "amount": str(Decimal(str(amount or 0)).quantize(Decimal("0.01"))),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def effective_counts(counter: UserOrderCounter | None, now: datetime) -> dict:
    """Counter values as of `now`, treating stale windows as zero."""
    if counter is None:
        return {
            "orders_this_hour": 0,
            "orders_today": 0,
            "consecutive_failures": 0,
            "daily_total": Decimal("0.00"),
            "monthly_total": Decimal("0.00"),
        }
    today = now.date()
    return {
        "orders_this_hour": counter.orders_this_hour if counter.hour_window_start == hour_window(now) else 0,
        "orders_today": counter.orders_today if counter.day_window_start == today else 0,
        "consecutive_failures": counter.consecutive_failures or 0,
        "daily_total": Decimal(counter.daily_total or 0) if counter.daily_window == today else Decimal("0.00"),
        "monthly_total": Decimal(counter.monthly_total or 0) if counter.monthly_window == month_window(now) else Decimal("0.00"),
    }


def _roll_windows(counter: UserOrderCounter, now: datetime) -> None:
    today = now.date()
    if counter.hour_window_start != hour_window(now):
        counter.hour_window_start = hour_window(now)
        counter.orders_this_hour = 0
    if counter.day_window_start != today:
        counter.day_window_start = today
        counter.orders_today = 0
    if counter.daily_window != today:
        counter.daily_window = today
        counter.daily_total = Decimal("0.00")
    if counter.monthly_window != month_window(now):
        counter.monthly_window = month_window(now)
        counter.monthly_total = Decimal("0.00")


def _get_counter(user_id: str) -> UserOrderCounter | None:
    return db.session.query(UserOrderCounter).filter_by(user_id=user_id).one_or_none()


def _locked_counter(user_id: str) -> UserOrderCounter:
    get_or_create(UserOrderCounter, user_id=user_id)
    return lock_for_update(
        db.session.query(UserOrderCounter).filter_by(user_id=user_id)
    ).one()


def log_security_event(
    *,
    event_type: str,
    severity: str,
    user_id: str | None = None,
    order_id: str | None = None,
    details: dict | None = None,
) -> SecurityEvent:
    """Append a SecurityEvent and log it at the matching level. Caller commits."""
    event = SecurityEvent(
        user_id=user_id,
        order_id=order_id,
        event_type=event_type,
        severity=severity,
        details=details,
        occurred_at=utcnow(),
    )
    db.session.add(event)
    current_app.logger.log(
        _LOG_LEVELS.get(severity, logging.WARNING),
        "Security event %s (%s) user=%s order=%s details=%s",
        event_type, severity, user_id, order_id, details,
    )
    return event


# =============================================================================
# GATES
# =============================================================================

def check_rate_limit(context: GuardContext, limits: GuardLimits, now: datetime, result: GuardResult) -> None:
    try:
        counts = effective_counts(_get_counter(context.user_id), now)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Rate limit lookup failed for %s; allowing", context.user_id)
        result.warn("Rate limit check unavailable")
        result.metadata["rate_limit"] = "unavailable"
        return

    hourly = counts["orders_this_hour"]
    daily = counts["orders_today"]
    result.metadata["rate_limit"] = {"orders_this_hour": hourly, "orders_today": daily}

    reason = None
    if hourly >= limits.max_orders_per_hour:
        reason = f"Hourly order limit reached ({hourly}/{limits.max_orders_per_hour})"
    elif daily >= limits.max_orders_per_day:
        reason = f"Daily order limit reached ({daily}/{limits.max_orders_per_day})"

    if reason:
        result.block(reason)
        log_security_event(
            event_type=EVENT_RATE_LIMIT_EXCEEDED,
            severity=SEVERITY_WARNING,
            user_id=context.user_id,
            order_id=context.order_id,
            details={"orders_this_hour": hourly, "orders_today": daily,
                     "max_per_hour": limits.max_orders_per_hour, "max_per_day": limits.max_orders_per_day},
        )


def check_cost_limit(context: GuardContext, limits: GuardLimits, now: datetime, result: GuardResult) -> None:
    try:
        counts = effective_counts(_get_counter(context.user_id), now)
        amount = Decimal(str(context.total_amount or 0))
        projected_daily = counts["daily_total"] + amount
        projected_monthly = counts["monthly_total"] + amount
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Cost limit lookup failed for %s; blocking", context.user_id)
        result.block("Cost limit check unavailable")
        return

    result.metadata["cost"] = {
        "projected_daily": str(projected_daily),
        "projected_monthly": str(projected_monthly),
    }

    exceeded = []
    if projected_daily > limits.daily_cost_limit:
        exceeded.append(f"Daily spend limit exceeded ({projected_daily} > {limits.daily_cost_limit})")
    if projected_monthly > limits.monthly_cost_limit:
        exceeded.append(f"Monthly spend limit exceeded ({projected_monthly} > {limits.monthly_cost_limit})")

    if exceeded:
        for reason in exceeded:
            result.block(reason)
        log_security_event(
            event_type=EVENT_COST_LIMIT_EXCEEDED,
            severity=SEVERITY_CRITICAL,
            user_id=context.user_id,
            order_id=context.order_id,
            details={"amount": str(amount), "projected_daily": str(projected_daily),
                     "projected_monthly": str(projected_monthly)},
        )
        return

    if projected_daily > limits.daily_cost_limit * limits.cost_warning_ratio:
        result.warn(f"Approaching daily spend limit ({projected_daily} of {limits.daily_cost_limit})")
    if projected_monthly > limits.monthly_cost_limit * limits.cost_warning_ratio:
        result.warn(f"Approaching monthly spend limit ({projected_monthly} of {limits.monthly_cost_limit})")


def check_order_validity(
    context: GuardContext,
    limits: GuardLimits,
    now: datetime,
    result: GuardResult,
    policy: SuspiciousPolicy,
) -> None:
    try:
        order_hash = compute_order_hash(context.items, context.shipping_address, context.total_amount)
        cutoff = now - timedelta(hours=limits.duplicate_window_hours)
        duplicate_count = (
            db.session.query(func.count(SubmissionFingerprint.id))
            .filter(
                SubmissionFingerprint.user_id == context.user_id,
                SubmissionFingerprint.order_hash == order_hash,
                SubmissionFingerprint.order_id != context.order_id,
                SubmissionFingerprint.created_at >= cutoff,
            )
            .scalar()
        ) or 0
        suspicious = policy(context, order_hash, duplicate_count, limits)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Order validation failed for %s; blocking", context.order_id)
        result.block("Order validation unavailable")
        return

    result.metadata["order_hash"] = order_hash
    result.metadata["duplicate_count"] = duplicate_count

    if not duplicate_count and not suspicious:
        return

    if duplicate_count:
        result.warn(f"Possible duplicate order ({duplicate_count} identical in {limits.duplicate_window_hours}h)")
    if suspicious:
        result.block(suspicious)

    log_security_event(
        event_type=EVENT_VALIDATION_FAILED,
        severity=SEVERITY_CRITICAL if suspicious else SEVERITY_WARNING,
        user_id=context.user_id,
        order_id=context.order_id,
        details={"duplicate": bool(duplicate_count), "duplicate_count": duplicate_count,
                 "order_hash": order_hash, "suspicious": suspicious},
    )


def check_retry_abuse(context: GuardContext, limits: GuardLimits, now: datetime, result: GuardResult) -> None:
    if not context.is_retry:
        return
    try:
        counts = effective_counts(_get_counter(context.user_id), now)
        failures = counts["consecutive_failures"]
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Retry abuse lookup failed for %s; blocking", context.user_id)
        result.block("Retry check unavailable")
        return

    result.metadata["retry"] = {"retry_count": context.retry_count, "consecutive_failures": failures}

    reasons = []
    if context.retry_count > limits.max_retries:
        reasons.append(f"Too many retries for this order ({context.retry_count} > {limits.max_retries})")
    if failures > limits.max_consecutive_failures:
        reasons.append(f"Too many consecutive failures ({failures} > {limits.max_consecutive_failures})")

    if reasons:
        for reason in reasons:
            result.block(reason)
        log_security_event(
            event_type=EVENT_RETRY_ABUSE,
            severity=SEVERITY_CRITICAL,
            user_id=context.user_id,
            order_id=context.order_id,
            details={"retry_count": context.retry_count, "consecutive_failures": failures},
        )


def _subject_orders_query(subject: str):
    return db.session.query(Order).filter(
        (Order.user_id == subject) | ((Order.user_id.is_(None)) & (Order.customer_email == subject))
    )


def analyze_behavior(context: GuardContext, limits: GuardLimits, now: datetime, result: GuardResult) -> None:
    """Advisory: flags patterns in the user's last hour of orders. Never blocks."""
    try:
        recent = (
            _subject_orders_query(context.user_id)
            .filter(Order.created_at >= now - timedelta(hours=1))
            .order_by(Order.created_at.asc())
            .all()
        )
        total = sum((Decimal(o.total_amount or 0) for o in recent), Decimal("0.00"))
        rapid_gap = timedelta(minutes=limits.behavior_rapid_minutes)
        rapid = any(
            later.created_at - earlier.created_at < rapid_gap
            for earlier, later in zip(recent, recent[1:])
        )

        flags = []
        if len(recent) > limits.behavior_max_hourly_orders:
            flags.append(f"{len(recent)} orders in the last hour")
        if total > limits.behavior_max_hourly_amount:
            flags.append(f"{total} ordered in the last hour")
        if rapid:
            flags.append(f"Orders placed within {limits.behavior_rapid_minutes} minutes of each other")

        if flags:
            for flag in flags:
                result.warn(f"Unusual activity: {flag}")
            log_security_event(
                event_type=EVENT_SUSPICIOUS_BEHAVIOR,
                severity=SEVERITY_WARNING,
                user_id=context.user_id,
                order_id=context.order_id,
                details={"flags": flags, "orders_last_hour": len(recent), "amount_last_hour": str(total)},
            )
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Behavior analysis failed for %s; ignoring", context.user_id)


# =============================================================================
# ENTRY POINT
# =============================================================================

def perform_security_check(
    context: GuardContext,
    *,
    suspicious_policy: SuspiciousPolicy | None = None,
    limits: GuardLimits | None = None,
    now: datetime | None = None,
) -> GuardResult:
    """
    Run every gate independently and aggregate.

    Returns a GuardResult; blocked=True when any gate failed. Security events
    for failed gates are committed before returning.
    """
    if not context.user_id or not context.order_id:
        raise GuardError("user_id and order_id are required")

    limits = limits or GuardLimits.from_config(current_app.config)
    now = now or utcnow()
    policy = suspicious_policy or default_suspicious_policy
    result = GuardResult()

    gates = (
        lambda: check_rate_limit(context, limits, now, result),
        lambda: check_cost_limit(context, limits, now, result),
        lambda: check_order_validity(context, limits, now, result, policy),
        lambda: check_retry_abuse(context, limits, now, result),
        lambda: analyze_behavior(context, limits, now, result),
    )
    for gate in gates:
        gate()
        # A later gate's rollback must not discard earlier events
        db.session.commit()

    if result.blocked:
        current_app.logger.warning(
            "Guard blocked order %s for %s: %s", context.order_id, context.user_id, result.errors
        )
    return result


# =============================================================================
# TRACKING
# =============================================================================

def record_submission_attempt(context: GuardContext, *, now: datetime | None = None) -> None:
    """Count the attempt against hourly/daily limits and fingerprint it."""
    now = now or utcnow()
    order_hash = compute_order_hash(context.items, context.shipping_address, context.total_amount)

    def _op():
        counter = _locked_counter(context.user_id)
        _roll_windows(counter, now)
        counter.orders_this_hour += 1
        counter.orders_today += 1
        counter.updated_at = now
        db.session.add(SubmissionFingerprint(
            user_id=context.user_id,
            order_id=context.order_id,
            order_hash=order_hash,
            amount=Decimal(str(context.total_amount or 0)),
            created_at=now,
        ))
        db.session.commit()

    run_with_retry(_op)


def record_submission_success(user_id: str, order_id: str, cost, *, now: datetime | None = None) -> None:
    """Reset consecutive failures and add the realized cost to the spend windows."""
    now = now or utcnow()
    amount = Decimal(str(cost or 0))

    def _op():
        counter = _locked_counter(user_id)
        _roll_windows(counter, now)
        counter.consecutive_failures = 0
        counter.daily_total = Decimal(counter.daily_total or 0) + amount
        counter.monthly_total = Decimal(counter.monthly_total or 0) + amount
        counter.updated_at = now
        db.session.commit()

    run_with_retry(_op)


def record_submission_failure(user_id: str, order_id: str, error_type: str, details: dict | None = None, *, now: datetime | None = None) -> int:
    """
    Increment consecutive failures and log an order_failure event.

    Severity is info, or warning once the count exceeds 3.
    Returns the new consecutive failure count.
    """
    now = now or utcnow()

    def _op():
        counter = _locked_counter(user_id)
        counter.consecutive_failures = (counter.consecutive_failures or 0) + 1
        counter.updated_at = now
        failures = counter.consecutive_failures
        log_security_event(
            event_type=EVENT_ORDER_FAILURE,
            severity=SEVERITY_WARNING if failures > 3 else SEVERITY_INFO,
            user_id=user_id,
            order_id=order_id,
            details={"error_type": error_type, "consecutive_failures": failures, **(details or {})},
        )
        db.session.commit()
        return failures

    return run_with_retry(_op)


def get_user_security_status(user_id: str, *, event_limit: int = 20, now: datetime | None = None) -> dict:
    now = now or utcnow()
    limits = GuardLimits.from_config(current_app.config)
    counts = effective_counts(_get_counter(user_id), now)
    events = (
        db.session.query(SecurityEvent)
        .filter(SecurityEvent.user_id == user_id)
        .order_by(SecurityEvent.occurred_at.desc(), SecurityEvent.id.desc())
        .limit(event_limit)
        .all()
    )
    return {
        "user_id": user_id,
        "orders_this_hour": counts["orders_this_hour"],
        "orders_today": counts["orders_today"],
        "consecutive_failures": counts["consecutive_failures"],
        "daily_total": str(counts["daily_total"]),
        "monthly_total": str(counts["monthly_total"]),
        "limits": {
            "max_orders_per_hour": limits.max_orders_per_hour,
            "max_orders_per_day": limits.max_orders_per_day,
            "daily_cost_limit": str(limits.daily_cost_limit),
            "monthly_cost_limit": str(limits.monthly_cost_limit),
        },
        "recent_events": [e.to_dict() for e in events],
    }
