# Overview: Service-layer operations for orders; creation, lookup and the system note trail.

"""
Order Service

WHY: Checkout, the CLI and tests all need to create orders the same way so
totals and order numbering stay consistent everywhere.

INVARIANTS:
- total_amount == subtotal + shipping_cost + tax_amount + gifting_fee (0.01 tolerance)
- order_number is unique: ORD-YYYYMMDD-XXXXXX
- notes are append-only
"""

from __future__ import annotations

import secrets
from decimal import Decimal, InvalidOperation

from ..extensions import db
from ..models import Order, OrderItem, OrderNote
from ..models.orders import TOTAL_TOLERANCE, ORDER_STATUS_PENDING, PAYMENT_STATUS_PENDING
from giftflow.time_utils import utcnow, parse_iso_date


class OrderCreationError(Exception):
    """Raised when an order cannot be created from the given checkout data."""
    pass


CENT = Decimal("0.01")


def to_money(value, *, field: str = "amount") -> Decimal:
    if value is None or value == "":
        return Decimal("0.00")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise OrderCreationError(f"{field} must be a decimal amount")
    if amount.is_nan() or amount.is_infinite():
        raise OrderCreationError(f"{field} must be a decimal amount")
    return amount.quantize(CENT)


def generate_order_number(now=None) -> str:
    now = now or utcnow()
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


# =============================================================================
# CREATION
# =============================================================================

def create_order(
    *,
    items: list[dict],
    shipping_address: dict | None,
    user_id: str | None = None,
    customer_email: str | None = None,
    subtotal=None,
    shipping_cost=None,
    tax_amount=None,
    gifting_fee=None,
    total_amount=None,
    currency: str = "usd",
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
    billing_address: dict | None = None,
    scheduled_delivery_date=None,
    delivery_groups=None,
    is_gift: bool = False,
    gift_message: str | None = None,
    is_surprise_gift: bool = False,
    commit: bool = True,
) -> Order:
    """
    Create a pending order with its line items.

    subtotal defaults to the sum of quantity * unit_price. An explicit
    total_amount must match the component sum within 0.01, otherwise the
    order is rejected; when omitted it is computed.
    """
    if not items:
        raise OrderCreationError("Order must have at least one item")

    lines = []
    for idx, raw in enumerate(items):
        product_id = str(raw.get("product_id") or raw.get("productId") or "").strip()
        if not product_id:
            raise OrderCreationError(f"Item {idx} is missing product_id")
        try:
            quantity = int(raw.get("quantity", 1))
        except (TypeError, ValueError):
            raise OrderCreationError(f"Item {idx} quantity must be an integer")
        if quantity <= 0:
            raise OrderCreationError(f"Item {idx} quantity must be positive")
        raw_price = raw.get("unit_price", raw.get("price"))
        if raw_price is None:
            raise OrderCreationError(f"Item {idx} is missing unit_price")
        unit_price = to_money(raw_price, field=f"items[{idx}].unit_price")
        if unit_price < 0:
            raise OrderCreationError(f"Item {idx} unit_price cannot be negative")
        lines.append(OrderItem(
            position=idx,
            product_id=product_id,
            title=raw.get("title"),
            quantity=quantity,
            unit_price=unit_price,
        ))

    sub = to_money(subtotal, field="subtotal") if subtotal is not None else sum(
        (line.unit_price * line.quantity for line in lines), Decimal("0.00")
    )
    ship = to_money(shipping_cost, field="shipping_cost")
    tax = to_money(tax_amount, field="tax_amount")
    fee = to_money(gifting_fee, field="gifting_fee")
    computed = sub + ship + tax + fee

    if total_amount is None:
        total = computed
    else:
        total = to_money(total_amount, field="total_amount")
        if abs(total - computed) > TOTAL_TOLERANCE:
            raise OrderCreationError(
                f"total_amount {total} does not match subtotal + shipping + tax + gifting fee ({computed})"
            )

    delivery_date = None
    if scheduled_delivery_date:
        delivery_date = parse_iso_date(scheduled_delivery_date)
        if delivery_date is None:
            raise OrderCreationError("scheduled_delivery_date must be an ISO date")

    now = utcnow()
    order = Order(
        order_number=generate_order_number(now),
        user_id=user_id,
        customer_email=customer_email,
        subtotal=sub,
        shipping_cost=ship,
        tax_amount=tax,
        gifting_fee=fee,
        total_amount=total,
        currency=(currency or "usd").lower(),
        checkout_session_id=checkout_session_id,
        payment_intent_id=payment_intent_id,
        payment_status=PAYMENT_STATUS_PENDING,
        status=ORDER_STATUS_PENDING,
        shipping_address=shipping_address,
        billing_address=billing_address,
        scheduled_delivery_date=delivery_date,
        delivery_groups=delivery_groups,
        is_gift=bool(is_gift),
        gift_message=gift_message,
        is_surprise_gift=bool(is_surprise_gift),
        created_at=now,
    )
    order.items = lines
    db.session.add(order)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    return order


# =============================================================================
# LOOKUP + NOTES
# =============================================================================

def get_order(order_id: str) -> Order | None:
    return db.session.get(Order, order_id)


def find_order_by_session(session_id: str) -> Order | None:
    return db.session.query(Order).filter_by(checkout_session_id=session_id).one_or_none()


def find_order_by_payment_intent(payment_intent_id: str) -> Order | None:
    return (
        db.session.query(Order)
        .filter_by(payment_intent_id=payment_intent_id)
        .order_by(Order.created_at.desc())
        .first()
    )


def append_note(order_id: str, body: str, *, author: str = "system") -> OrderNote:
    """Append a note. Caller commits."""
    note = OrderNote(order_id=order_id, author=author, body=body, created_at=utcnow())
    db.session.add(note)
    return note
