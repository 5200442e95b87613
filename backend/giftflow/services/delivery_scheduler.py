# Overview: Service-layer operations for delivery scheduling; decides submit-now vs hold.

"""
Delivery Scheduler

WHY: Submitting a far-future gift to the marketplace too early risks price
drift and inventory changes. Orders whose requested delivery is further out
than the threshold are held as `scheduled` and released later.

DESIGN:
- decide_delivery() is pure: dates in, decision out. No DB access.
- apply_schedule() is the single side effect (persist scheduled state).
- ANY dated group beyond the threshold defers the WHOLE order.

Date precedence:
1. Per-package delivery groups (session metadata, else the order's stored
   groups) when at least one group carries a date
2. Session-level scheduled_delivery_date
3. The order's own scheduled_delivery_date
4. Nothing -> proceed
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order
from ..models.orders import ORDER_STATUS_SCHEDULED
from .order_service import append_note
from giftflow.time_utils import parse_iso_date, utcnow, utctoday, to_iso_date


DEFAULT_THRESHOLD_DAYS = 4

SOURCE_DELIVERY_GROUPS = "delivery_groups"
SOURCE_SESSION_DATE = "session_date"
SOURCE_ORDER_DATE = "order_date"
SOURCE_NONE = "none"

_DATE_KEYS = ("scheduledDeliveryDate", "scheduled_delivery_date")


@dataclass
class ScheduleDecision:
    should_defer: bool
    source: str
    threshold_days: int
    earliest_date: date | None = None
    latest_date: date | None = None
    processing_date: date | None = None
    days_until: dict = field(default_factory=dict)  # group id -> whole days from today
    delivery_groups: dict | None = None  # normalized metadata to persist when deferring

    def to_dict(self) -> dict:
        return {
            "should_defer": self.should_defer,
            "source": self.source,
            "threshold_days": self.threshold_days,
            "earliest_date": to_iso_date(self.earliest_date),
            "latest_date": to_iso_date(self.latest_date),
            "processing_date": to_iso_date(self.processing_date),
            "days_until": dict(self.days_until),
        }


# =============================================================================
# NORMALIZATION
# =============================================================================

def _load_json(value):
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


def normalize_delivery_groups(raw) -> dict | None:
    """
    Accept either {package_id: group} or [group-with-id, ...] and return
    {package_id: group}. Session metadata arrives as a JSON string.
    """
    raw = _load_json(raw)
    if not raw:
        return None
    if isinstance(raw, dict):
        return {str(k): v for k, v in raw.items() if isinstance(v, dict)}
    if isinstance(raw, list):
        groups = {}
        for idx, group in enumerate(raw):
            if not isinstance(group, dict):
                continue
            key = group.get("id") or group.get("package_id") or f"package_{idx + 1}"
            groups[str(key)] = group
        return groups or None
    return None


def group_date(group: dict) -> date | None:
    for key in _DATE_KEYS:
        if group.get(key):
            return parse_iso_date(group[key])
    return None


def _dated_groups(groups: dict | None) -> dict:
    if not groups:
        return {}
    dated = {}
    for key, group in groups.items():
        d = group_date(group)
        if d is not None:
            dated[key] = d
    return dated


# =============================================================================
# DECISION (PURE)
# =============================================================================

def decide_delivery(
    order: Order,
    *,
    session_metadata: dict | None = None,
    today: date | None = None,
    threshold_days: int | None = None,
) -> ScheduleDecision:
    """
    Decide whether to submit now or hold the order.

    processing_date is the first day on which no group is beyond the
    threshold any more: latest date minus threshold.
    """
    today = today or utctoday()
    if threshold_days is None:
        threshold_days = DEFAULT_THRESHOLD_DAYS
    metadata = session_metadata or {}

    session_groups = normalize_delivery_groups(metadata.get("delivery_groups"))
    order_groups = normalize_delivery_groups(order.delivery_groups)

    groups = None
    dated = _dated_groups(session_groups)
    if dated:
        groups = session_groups
    else:
        dated = _dated_groups(order_groups)
        if dated:
            groups = order_groups

    if dated:
        source = SOURCE_DELIVERY_GROUPS
    else:
        session_date = parse_iso_date(
            metadata.get("scheduled_delivery_date") or metadata.get("scheduledDeliveryDate")
        )
        if session_date is not None:
            source = SOURCE_SESSION_DATE
            dated = {"order": session_date}
        elif order.scheduled_delivery_date is not None:
            source = SOURCE_ORDER_DATE
            dated = {"order": order.scheduled_delivery_date}
        else:
            return ScheduleDecision(should_defer=False, source=SOURCE_NONE, threshold_days=threshold_days)

    days_until = {key: (d - today).days for key, d in dated.items()}
    earliest = min(dated.values())
    latest = max(dated.values())
    should_defer = any(days > threshold_days for days in days_until.values())

    return ScheduleDecision(
        should_defer=should_defer,
        source=source,
        threshold_days=threshold_days,
        earliest_date=earliest,
        latest_date=latest,
        processing_date=(latest - timedelta(days=threshold_days)) if should_defer else None,
        days_until=days_until,
        delivery_groups=groups,
    )


def decide_for_order(order: Order, *, session_metadata: dict | None = None, today: date | None = None) -> ScheduleDecision:
    """decide_delivery() with the threshold taken from app config."""
    threshold = int(current_app.config.get("SCHEDULING_THRESHOLD_DAYS", DEFAULT_THRESHOLD_DAYS))
    return decide_delivery(order, session_metadata=session_metadata, today=today, threshold_days=threshold)


# =============================================================================
# SIDE EFFECT
# =============================================================================

def apply_schedule(order: Order, decision: ScheduleDecision, *, commit: bool = True) -> Order:
    """
    Persist a deferral: status scheduled, earliest date, raw group metadata.

    No-op for decisions that proceed.
    """
    if not decision.should_defer:
        return order

    order.status = ORDER_STATUS_SCHEDULED
    order.scheduled_delivery_date = decision.earliest_date
    if decision.delivery_groups:
        order.delivery_groups = decision.delivery_groups
    order.updated_at = utcnow()

    append_note(
        order.id,
        f"Order scheduled: earliest delivery {to_iso_date(decision.earliest_date)}, "
        f"processing on {to_iso_date(decision.processing_date)} ({decision.source})",
    )

    if commit:
        db.session.commit()

    current_app.logger.info(
        "Order %s scheduled until %s (days until: %s)",
        order.id, to_iso_date(decision.processing_date), decision.days_until,
    )
    return order
