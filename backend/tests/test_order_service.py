"""
Order creation tests.

Verifies:
- total_amount == subtotal + shipping + tax + gifting fee (0.01 tolerance)
- Line item validation
- Order numbering and the note trail
"""

import re
from decimal import Decimal

import pytest

from giftflow.models import Order, OrderNote
from giftflow.models.orders import ORDER_STATUS_PENDING, PAYMENT_STATUS_PENDING
from giftflow.services import order_service
from giftflow.services.order_service import OrderCreationError, create_order

from conftest import SHIPPING_ADDRESS


ITEMS = [
    {"product_id": "B0001", "quantity": 2, "unit_price": "10.00"},
    {"productId": "B0002", "quantity": 1, "price": "5.50"},
]


class TestTotals:
    def test_total_computed_from_components(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS,
                             shipping_cost="4.99", tax_amount="2.01", gifting_fee="3.00")

        assert order.subtotal == Decimal("25.50")
        assert order.total_amount == Decimal("35.50")
        assert order.totals_consistent()
        assert order.status == ORDER_STATUS_PENDING
        assert order.payment_status == PAYMENT_STATUS_PENDING

    def test_total_within_tolerance_accepted(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS, total_amount="25.51")
        assert order.total_amount == Decimal("25.51")

    def test_total_mismatch_rejected(self, db_session):
        with pytest.raises(OrderCreationError, match="does not match"):
            create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS, total_amount="25.52")
        assert db_session.query(Order).count() == 0

    def test_explicit_subtotal_used(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS, subtotal="20.00", tax_amount="1.00")
        assert order.total_amount == Decimal("21.00")


class TestValidation:
    def test_requires_items(self, db_session):
        with pytest.raises(OrderCreationError, match="at least one item"):
            create_order(items=[], shipping_address=SHIPPING_ADDRESS)

    @pytest.mark.parametrize(
        "item,message",
        [
            ({"quantity": 1, "unit_price": "1.00"}, "missing product_id"),
            ({"product_id": "B1", "quantity": 0, "unit_price": "1.00"}, "must be positive"),
            ({"product_id": "B1", "quantity": "two", "unit_price": "1.00"}, "must be an integer"),
            ({"product_id": "B1", "quantity": 1}, "missing unit_price"),
            ({"product_id": "B1", "quantity": 1, "unit_price": "abc"}, "decimal amount"),
            ({"product_id": "B1", "quantity": 1, "unit_price": "-1.00"}, "cannot be negative"),
        ],
    )
    def test_invalid_items(self, db_session, item, message):
        with pytest.raises(OrderCreationError, match=message):
            create_order(items=[item], shipping_address=SHIPPING_ADDRESS)

    def test_invalid_delivery_date(self, db_session):
        with pytest.raises(OrderCreationError, match="ISO date"):
            create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS, scheduled_delivery_date="soon")


class TestNumberingAndNotes:
    def test_order_number_format(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS)
        assert re.fullmatch(r"ORD-\d{8}-[0-9A-F]{6}", order.order_number)

    def test_items_keep_checkout_order(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS)
        assert [item.product_id for item in order.items] == ["B0001", "B0002"]

    def test_lookups(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS,
                             checkout_session_id="cs_lookup", payment_intent_id="pi_lookup")
        assert order_service.find_order_by_session("cs_lookup").id == order.id
        assert order_service.find_order_by_payment_intent("pi_lookup").id == order.id
        assert order_service.find_order_by_session("cs_missing") is None

    def test_append_note(self, db_session):
        order = create_order(items=ITEMS, shipping_address=SHIPPING_ADDRESS)
        order_service.append_note(order.id, "first")
        order_service.append_note(order.id, "second", author="operator")
        db_session.commit()

        notes = db_session.query(OrderNote).filter_by(order_id=order.id).order_by(OrderNote.id).all()
        assert [(n.author, n.body) for n in notes] == [("system", "first"), ("operator", "second")]
