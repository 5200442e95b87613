"""
Pytest fixtures for giftflow backend tests.

Provides the app with mock integrations, a wiped database per test, and
order / marketplace credential factories.
"""

import itertools

import pytest

from giftflow import create_app
from giftflow.config import TestConfig
from giftflow.extensions import db
from giftflow.integrations import MARKETPLACE_KEY, NOTIFICATIONS_KEY, PAYMENTS_KEY
from giftflow.models import BusinessPaymentMethod, MarketplaceAccount
from giftflow.models.orders import ORDER_STATUS_PROCESSING, PAYMENT_STATUS_SUCCEEDED
from giftflow.services.order_service import create_order


SHIPPING_ADDRESS = {
    "name": "Ada Lovelace",
    "address_line1": "12 Analytical Way",
    "city": "Springfield",
    "state": "IL",
    "zip_code": "62701",
    "phone": "2175550100",
}

_product_ids = itertools.count(1)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database (and fresh mock integrations) for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        for key in (PAYMENTS_KEY, MARKETPLACE_KEY, NOTIFICATIONS_KEY):
            app.extensions[key].reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def payments(app, db_session):
    return app.extensions[PAYMENTS_KEY]


@pytest.fixture
def marketplace(app, db_session):
    return app.extensions[MARKETPLACE_KEY]


@pytest.fixture
def notifier(app, db_session):
    return app.extensions[NOTIFICATIONS_KEY]


@pytest.fixture
def marketplace_account(db_session):
    """Default active marketplace account."""
    account = MarketplaceAccount(
        account_name="primary",
        retailer="amazon",
        api_key="zinc_test_key",
        retailer_email="buyer@giftflow.test",
        retailer_password="retailer-secret",
        is_default=True,
    )
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture
def payment_method(db_session):
    """Complete default business card."""
    method = BusinessPaymentMethod(
        name_on_card="GiftFlow Inc",
        card_token="card_tok_123",
        last_four="4242",
        expiration_month=12,
        expiration_year=2031,
        is_default=True,
    )
    db_session.add(method)
    db_session.commit()
    return method


@pytest.fixture
def make_order(db_session):
    """
    Order factory.

    Each call gets a distinct product id so identical-order detection only
    fires when a test asks for it. Pass paid=True for an order whose payment
    already succeeded.
    """
    def _make(*, paid: bool = False, items=None, **overrides):
        if items is None:
            items = [{"product_id": f"B{next(_product_ids):09d}", "quantity": 1, "unit_price": "25.00", "title": "Gift"}]
        params = {
            "items": items,
            "shipping_address": dict(SHIPPING_ADDRESS),
            "user_id": "user-1",
            "customer_email": "ada@example.com",
            "shipping_cost": "5.00",
            "tax_amount": "2.00",
            "gifting_fee": "3.00",
        }
        params.update(overrides)
        order = create_order(**params)
        if paid:
            order.payment_status = PAYMENT_STATUS_SUCCEEDED
            order.status = ORDER_STATUS_PROCESSING
            db_session.commit()
        return order

    return _make


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def operator_headers(app):
    return auth_headers(app.config["OPERATOR_API_TOKEN"])


@pytest.fixture
def service_headers(app):
    return auth_headers(app.config["SERVICE_API_TOKEN"])
