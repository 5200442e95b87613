from __future__ import annotations

import uuid
from decimal import Decimal

from ..extensions import db
from giftflow.time_utils import to_utc_z, to_iso_date


# Order lifecycle
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_SCHEDULED = "scheduled"
ORDER_STATUS_SUBMITTED = "submitted"  # never assigned; accepted orders stay processing with marketplace_status "submitted"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_FAILED = "failed"
ORDER_STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = [
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SCHEDULED,
    ORDER_STATUS_SUBMITTED,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_CANCELLED,
]

PAYMENT_STATUS_PENDING = "pending"
PAYMENT_STATUS_SUCCEEDED = "succeeded"
PAYMENT_STATUS_FAILED = "failed"

TOTAL_TOLERANCE = Decimal("0.01")


def _new_order_id() -> str:
    return str(uuid.uuid4())


def _money(value) -> str | None:
    return str(value) if value is not None else None


class Order(db.Model):
    """
    Canonical customer order.

    WHY: Single record that payment verification, delivery scheduling and
    marketplace fulfillment all reconcile against.

    INVARIANTS:
    - total_amount == subtotal + shipping_cost + tax_amount + gifting_fee
    - marketplace_order_id is set at most once (unique, never overwritten)
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_payment_created", "status", "payment_status", "created_at"),
        db.Index("ix_orders_user_created", "user_id", "created_at"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_new_order_id)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    user_id = db.Column(db.String(64), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)

    # Money (decimal, never float)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    shipping_cost = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    gifting_fee = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    currency = db.Column(db.String(3), nullable=False, default="usd")

    # Payment linkage
    checkout_session_id = db.Column(db.String(255), nullable=True, unique=True)
    payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    # Marketplace linkage
    marketplace_order_id = db.Column(db.String(128), nullable=True, unique=True)
    marketplace_status = db.Column(db.String(32), nullable=True)
    submission_attempts = db.Column(db.Integer, nullable=False, default=0)
    last_submission_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.JSON, nullable=True)

    # Delivery
    shipping_address = db.Column(db.JSON, nullable=True)
    billing_address = db.Column(db.JSON, nullable=True)
    scheduled_delivery_date = db.Column(db.Date, nullable=True)
    delivery_groups = db.Column(db.JSON, nullable=True)  # package id -> {items, scheduledDeliveryDate}

    # Gift metadata
    is_gift = db.Column(db.Boolean, nullable=False, default=False)
    gift_message = db.Column(db.Text, nullable=True)
    is_surprise_gift = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.position",
        cascade="all, delete-orphan",
    )
    notes = db.relationship(
        "OrderNote",
        backref="order",
        lazy=True,
        order_by="OrderNote.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def computed_total(self) -> Decimal:
        return (
            Decimal(self.subtotal or 0)
            + Decimal(self.shipping_cost or 0)
            + Decimal(self.tax_amount or 0)
            + Decimal(self.gifting_fee or 0)
        )

    def totals_consistent(self) -> bool:
        return abs(self.computed_total() - Decimal(self.total_amount or 0)) <= TOTAL_TOLERANCE

    @property
    def customer_identifier(self) -> str:
        return self.customer_email or self.user_id or "Unknown"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "user_id": self.user_id,
            "customer_email": self.customer_email,
            "subtotal": _money(self.subtotal),
            "shipping_cost": _money(self.shipping_cost),
            "tax_amount": _money(self.tax_amount),
            "gifting_fee": _money(self.gifting_fee),
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "checkout_session_id": self.checkout_session_id,
            "payment_intent_id": self.payment_intent_id,
            "payment_status": self.payment_status,
            "status": self.status,
            "marketplace_order_id": self.marketplace_order_id,
            "marketplace_status": self.marketplace_status,
            "submission_attempts": self.submission_attempts,
            "last_submission_at": to_utc_z(self.last_submission_at),
            "last_error": self.last_error,
            "shipping_address": self.shipping_address,
            "billing_address": self.billing_address,
            "scheduled_delivery_date": to_iso_date(self.scheduled_delivery_date),
            "delivery_groups": self.delivery_groups,
            "is_gift": self.is_gift,
            "gift_message": self.gift_message,
            "is_surprise_gift": self.is_surprise_gift,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """Line item on an order, in checkout order."""
    __tablename__ = "order_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.String(64), nullable=False)
    title = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "position": self.position,
            "product_id": self.product_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
        }


class OrderNote(db.Model):
    """
    Human-readable note attached to an order.

    IMMUTABLE: Append-only operator/system trail.
    """
    __tablename__ = "order_notes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    author = db.Column(db.String(64), nullable=False, default="system")
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "author": self.author,
            "body": self.body,
            "created_at": to_utc_z(self.created_at),
        }
