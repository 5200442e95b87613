"""
Fulfillment submitter tests.

Verifies:
- Successful submission stores the marketplace order id once
- Non-2xx responses fail the order with the raw body in the note trail
- Transport failures leave the order "submission_unknown", not failed
- Degraded cardholder-name-only payment, guard blocks, address validation
"""

from decimal import Decimal

import pytest
from sqlalchemy import update

from giftflow.extensions import db
from giftflow.integrations import MARKETPLACE_KEY
from giftflow.models import BusinessPaymentMethod, MarketplaceAccount, Order, OrderItem, OrderNote, SecurityEvent, SubmissionFingerprint, UserOrderCounter
from giftflow.models.marketplace import ACCOUNT_STATUS_DISABLED
from giftflow.models.orders import (
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SCHEDULED,
    ORDER_STATUS_SHIPPED,
)
from giftflow.services.fulfillment_service import (
    MARKETPLACE_STATUS_FAILED,
    MARKETPLACE_STATUS_SUBMITTED,
    MARKETPLACE_STATUS_UNKNOWN,
    FulfillmentError,
    MarketplaceCallbackError,
    MarketplaceConfigurationError,
    MarketplaceOrderError,
    MarketplaceUnavailableError,
    OrderNotFoundError,
    ShippingAddressError,
    apply_marketplace_event,
    build_marketplace_request,
    idempotency_key,
    marketplace_webhook_token,
    submit_order,
    validate_shipping_address,
    verify_marketplace_webhook_token,
)
from giftflow.services import fulfillment_service
from giftflow.services.order_guard_service import hour_window, month_window
from giftflow.services.order_service import get_order
from giftflow.time_utils import utcnow

from conftest import SHIPPING_ADDRESS


def _notes(db_session, order_id):
    return [n.body for n in db_session.query(OrderNote).filter_by(order_id=order_id).order_by(OrderNote.id)]


# =============================================================================
# SUCCESS
# =============================================================================


class TestSuccessfulSubmission:
    def test_marketplace_id_stored(self, db_session, marketplace, notifier, marketplace_account, payment_method, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(200, {"request_id": "zx_1"})

        result = submit_order(order.id)

        assert result.success is True
        assert result.marketplace_order_id == "zx_1"
        assert result.degraded_payment is False
        assert result.request is None

        order = get_order(order.id)
        assert order.marketplace_order_id == "zx_1"
        assert order.status == ORDER_STATUS_PROCESSING
        assert order.marketplace_status == MARKETPLACE_STATUS_SUBMITTED
        assert order.submission_attempts == 1
        assert order.last_submission_at is not None
        assert any("zx_1" in body for body in _notes(db_session, order.id))
        assert [m["kind"] for m in notifier.sent] == ["order_confirmation", "order_receipt"]

    def test_request_contents(self, db_session, marketplace, marketplace_account, payment_method, make_order):
        order = make_order(paid=True, is_gift=True, gift_message="Happy birthday")

        submit_order(order.id)

        request = marketplace.requests[0]
        assert marketplace.api_keys == ["zinc_test_key"]
        assert request["idempotency_key"] == idempotency_key(order)
        assert request["retailer"] == "amazon"
        assert request["max_price"] == 3500
        assert request["products"] == [{"product_id": order.items[0].product_id, "quantity": 1}]
        assert request["shipping_address"]["first_name"] == "Ada"
        assert request["shipping_address"]["last_name"] == "Lovelace"
        assert request["billing_address"] == request["shipping_address"]
        assert request["payment_method"]["card_token"] == "card_tok_123"
        assert request["is_gift"] is True
        assert request["gift_message"] == "Happy birthday"
        assert request["retailer_credentials"]["password"] == "retailer-secret"
        assert request["client_notes"]["order_number"] == order.order_number
        assert request["webhooks"]["request_succeeded"] == (
            f"https://hooks.test.local/api/webhooks/marketplace/request_succeeded?orderId={order.id}"
            f"&token={marketplace_webhook_token(order.id, 'zinc-hook-test')}"
        )

    def test_guard_counters_updated(self, db_session, marketplace_account, payment_method, make_order):
        order = make_order(paid=True, user_id="counted-user")

        submit_order(order.id)

        counter = db_session.query(UserOrderCounter).filter_by(user_id="counted-user").one()
        assert counter.orders_this_hour == 1
        assert counter.daily_total == Decimal("35.00")
        assert counter.consecutive_failures == 0

    def test_repeat_call_is_noop(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        order.marketplace_order_id = "zx_existing"
        db_session.commit()

        result = submit_order(order.id)

        assert result.success is True
        assert result.already_submitted is True
        assert result.marketplace_order_id == "zx_existing"
        assert marketplace.requests == []

    def test_debug_mode_returns_redacted_request(self, db_session, marketplace_account, payment_method, make_order):
        order = make_order(paid=True)

        result = submit_order(order.id, debug_mode=True, is_test_mode=True)

        assert result.request["is_test_mode"] is True
        assert result.request["retailer_credentials"]["password"] == "***"
        assert result.request["payment_method"]["card_token"] == "***"

    def test_notification_failure_does_not_fail_submission(self, db_session, notifier, marketplace_account, make_order):
        notifier.fail = True
        order = make_order(paid=True)

        result = submit_order(order.id)

        assert result.success is True
        assert get_order(order.id).marketplace_order_id == result.marketplace_order_id


# =============================================================================
# DEGRADED PAYMENT
# =============================================================================


class TestDegradedPayment:
    def test_no_payment_method(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)

        result = submit_order(order.id)

        assert result.success is True
        assert result.degraded_payment is True
        assert marketplace.requests[0]["payment_method"] == {"name_on_card": "Gift Orders", "use_gift": False}

    def test_incomplete_payment_method(self, db_session, marketplace, marketplace_account, make_order):
        db_session.add(BusinessPaymentMethod(name_on_card="No Token", is_default=True))
        db_session.commit()
        order = make_order(paid=True)

        result = submit_order(order.id)

        assert result.degraded_payment is True
        assert "card_token" not in marketplace.requests[0]["payment_method"]


# =============================================================================
# FAILURES
# =============================================================================


class TestMarketplaceFailures:
    def test_non_2xx_marks_failed(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(400, {"code": "invalid_product_id", "message": "Unknown ASIN"})

        with pytest.raises(MarketplaceOrderError) as excinfo:
            submit_order(order.id)

        assert excinfo.value.status_code == 400
        order = get_order(order.id)
        assert order.status == ORDER_STATUS_FAILED
        assert order.marketplace_status == MARKETPLACE_STATUS_FAILED
        assert order.marketplace_order_id is None
        assert order.last_error["status_code"] == 400
        assert any("HTTP 400" in body and "invalid_product_id" in body for body in _notes(db_session, order.id))

        event = db_session.query(SecurityEvent).filter_by(event_type="order_failure").one()
        assert event.details["error_type"] == "marketplace_rejected"

    def test_transport_error_is_unknown_not_failed(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_transport_error("read timed out")

        with pytest.raises(MarketplaceUnavailableError):
            submit_order(order.id)

        order = get_order(order.id)
        assert order.status == ORDER_STATUS_PROCESSING
        assert order.marketplace_status == MARKETPLACE_STATUS_UNKNOWN
        assert order.marketplace_order_id is None
        assert order.submission_attempts == 1
        assert order.last_error["error_code"] == "submission_unknown"

    def test_accepted_without_id_is_unknown(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(200, {"status": "accepted"})

        with pytest.raises(MarketplaceUnavailableError):
            submit_order(order.id)

        assert get_order(order.id).marketplace_status == MARKETPLACE_STATUS_UNKNOWN

    def test_failed_order_can_be_resubmitted(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(500, "upstream exploded")
        with pytest.raises(MarketplaceOrderError):
            submit_order(order.id)

        marketplace.queue_response(200, {"request_id": "zx_retry"})
        result = submit_order(order.id, trigger_source="manual_recovery")

        assert result.marketplace_order_id == "zx_retry"
        order = get_order(order.id)
        assert order.status == ORDER_STATUS_PROCESSING
        assert order.submission_attempts == 2
        assert marketplace.requests[0]["idempotency_key"] == marketplace.requests[1]["idempotency_key"]


class TestPreconditions:
    def test_missing_order(self, db_session):
        with pytest.raises(OrderNotFoundError):
            submit_order("does-not-exist")

    def test_unpaid_order(self, db_session, marketplace_account, make_order):
        order = make_order()
        with pytest.raises(FulfillmentError, match="payment has not succeeded"):
            submit_order(order.id)

    def test_scheduled_order(self, db_session, marketplace_account, make_order):
        order = make_order(paid=True)
        order.status = ORDER_STATUS_SCHEDULED
        db_session.commit()

        with pytest.raises(FulfillmentError, match="scheduled"):
            submit_order(order.id)

    def test_incomplete_shipping_address(self, db_session, marketplace, marketplace_account, make_order):
        address = dict(SHIPPING_ADDRESS)
        del address["city"]
        order = make_order(paid=True, shipping_address=address)

        with pytest.raises(ShippingAddressError) as excinfo:
            submit_order(order.id)

        assert excinfo.value.missing_fields == ["city"]
        order = get_order(order.id)
        assert order.status == ORDER_STATUS_FAILED
        assert order.last_error["error_code"] == "incomplete_shipping_address"
        assert marketplace.requests == []

    def test_no_marketplace_account(self, db_session, marketplace, make_order):
        order = make_order(paid=True)

        with pytest.raises(MarketplaceConfigurationError):
            submit_order(order.id)

        order = get_order(order.id)
        assert order.status == ORDER_STATUS_PROCESSING
        assert any("No active marketplace account configured" in body for body in _notes(db_session, order.id))
        assert marketplace.requests == []

    def test_disabled_account_ignored(self, db_session, make_order):
        db_session.add(MarketplaceAccount(account_name="old", api_key="k", is_default=True,
                                          account_status=ACCOUNT_STATUS_DISABLED))
        db_session.commit()
        order = make_order(paid=True)

        with pytest.raises(MarketplaceConfigurationError):
            submit_order(order.id)

    def test_guard_block_leaves_order_untouched(self, db_session, marketplace, marketplace_account, make_order):
        now = utcnow()
        db_session.add(UserOrderCounter(
            user_id="user-1",
            orders_this_hour=5,
            hour_window_start=hour_window(now),
            orders_today=5,
            day_window_start=now.date(),
            monthly_window=month_window(now),
        ))
        db_session.commit()
        order = make_order(paid=True)

        result = submit_order(order.id)

        assert result.success is False
        assert result.blocked is True
        assert marketplace.requests == []
        order = get_order(order.id)
        assert order.submission_attempts == 0
        assert order.status == ORDER_STATUS_PROCESSING
        assert any("blocked by guard" in body for body in _notes(db_session, order.id))

    def test_marketplace_client_unavailable(self, app, db_session, marketplace_account, make_order, monkeypatch):
        monkeypatch.setitem(app.extensions, MARKETPLACE_KEY, None)
        order = make_order(paid=True, user_id="unsent-user")

        with pytest.raises(MarketplaceConfigurationError, match="client unavailable"):
            submit_order(order.id)

        order = get_order(order.id)
        assert order.submission_attempts == 0
        assert order.status == ORDER_STATUS_PROCESSING
        assert not any("Submitting to marketplace" in body for body in _notes(db_session, order.id))
        assert db_session.query(UserOrderCounter).filter_by(user_id="unsent-user").count() == 0
        assert db_session.query(SubmissionFingerprint).filter_by(order_id=order.id).count() == 0


# =============================================================================
# CONCURRENT SUBMITTERS
# =============================================================================


def _write_between_load_and_attempt(monkeypatch, **values):
    """Another writer commits to the order after it is loaded but before the attempt is saved."""
    build = fulfillment_service.build_marketplace_request

    def _build(order, *args, **kwargs):
        request = build(order, *args, **kwargs)
        session = db.session()
        session.execute(
            update(Order)
            .where(Order.id == order.id)
            .values(version_id=Order.version_id + 1, **values)
            .execution_options(synchronize_session=False)
        )
        # Keep our stale copy of the row in memory
        session.expire_on_commit = False
        try:
            session.commit()
        finally:
            session.expire_on_commit = True
        return request

    monkeypatch.setattr(fulfillment_service, "build_marketplace_request", _build)


class TestConcurrentSubmission:
    def test_attempt_loses_to_completed_submission(self, db_session, marketplace, marketplace_account, make_order, monkeypatch):
        order = make_order(paid=True)
        order_id = order.id
        _write_between_load_and_attempt(monkeypatch, marketplace_order_id="zx_other_worker")

        result = submit_order(order_id)

        assert result.success is True
        assert result.already_submitted is True
        assert result.marketplace_order_id == "zx_other_worker"
        assert marketplace.requests == []
        assert get_order(order_id).submission_attempts == 0

    def test_attempt_loses_to_submission_in_flight(self, db_session, marketplace, marketplace_account, make_order, monkeypatch):
        order = make_order(paid=True)
        order_id = order.id
        _write_between_load_and_attempt(monkeypatch, submission_attempts=1)

        with pytest.raises(FulfillmentError, match="being submitted concurrently"):
            submit_order(order_id)

        assert marketplace.requests == []
        order = get_order(order_id)
        assert order.submission_attempts == 1
        assert order.marketplace_order_id is None

    def test_response_id_not_stored_when_order_already_has_one(self, db_session, marketplace, notifier, marketplace_account, make_order, monkeypatch):
        order = make_order(paid=True, user_id="racing-user")
        order_id = order.id
        marketplace.queue_response(200, {"request_id": "zx_second"})
        send = marketplace.submit_order

        def _submit_after_other_worker(request, *, api_key):
            db.session.query(Order).filter(Order.id == order_id).update(
                {Order.marketplace_order_id: "zx_first", Order.version_id: Order.version_id + 1},
                synchronize_session=False,
            )
            db.session.commit()
            return send(request, api_key=api_key)

        monkeypatch.setattr(marketplace, "submit_order", _submit_after_other_worker)

        result = submit_order(order_id)

        assert result.success is True
        assert result.already_submitted is True
        assert result.marketplace_order_id == "zx_first"
        assert get_order(order_id).marketplace_order_id == "zx_first"
        assert not any("Marketplace order placed" in body for body in _notes(db_session, order_id))
        assert notifier.sent == []
        counter = db_session.query(UserOrderCounter).filter_by(user_id="racing-user").one()
        assert counter.daily_total == Decimal("0.00")


# =============================================================================
# PURE HELPERS
# =============================================================================


class TestRequestBuilding:
    def _order(self, **overrides):
        params = dict(
            id="order-pure",
            order_number="ORD-20260101-ABCDEF",
            total_amount=Decimal("19.99"),
            shipping_address={"fullName": "Grace Brewster Hopper", "addressLine1": "1 Navy Yard",
                              "city": "Arlington", "state": "VA", "zipCode": "22202"},
            billing_address=None,
            is_gift=False,
            gift_message=None,
        )
        params.update(overrides)
        return Order(**params)

    def test_degraded_request_without_webhooks(self):
        account = MarketplaceAccount(retailer="amazon", retailer_email="b@x.test", retailer_password="pw")
        request = build_marketplace_request(
            self._order(),
            [OrderItem(product_id="B1", quantity=2)],
            account,
            None,
            trigger_source="checkout",
        )

        assert request["max_price"] == 1999
        assert request["products"] == [{"product_id": "B1", "quantity": 2}]
        assert request["shipping_address"]["first_name"] == "Grace"
        assert request["shipping_address"]["last_name"] == "Brewster Hopper"
        assert request["shipping_address"]["phone_number"] == "5551234567"
        assert request["payment_method"] == {"name_on_card": "Gift Orders", "use_gift": False}
        assert "webhooks" not in request

    def test_billing_prefers_order_billing_address(self):
        order = self._order(billing_address={"name": "Bill Payer", "address_line1": "9 Elm",
                                             "city": "Dover", "state": "DE", "zip_code": "19901"})
        request = build_marketplace_request(
            order, [], MarketplaceAccount(retailer="amazon"), None,
            trigger_source="checkout", webhook_base_url="https://hooks.example.com/",
        )

        assert request["billing_address"]["city"] == "Dover"
        assert request["webhooks"]["tracking_obtained"] == (
            "https://hooks.example.com/api/webhooks/marketplace/tracking_obtained?orderId=order-pure"
        )

    def test_address_spellings(self):
        assert validate_shipping_address(self._order().shipping_address) == []
        assert validate_shipping_address(None) == ["name", "address_line1", "city", "state", "zip_code"]


# =============================================================================
# MARKETPLACE CALLBACKS
# =============================================================================


class TestMarketplaceCallbacks:
    def _order(self, db_session, make_order, **values):
        order = make_order(paid=True)
        for key, value in values.items():
            setattr(order, key, value)
        db_session.commit()
        return order.id

    def test_request_succeeded_resolves_unknown_outcome(self, db_session, make_order):
        order_id = self._order(
            db_session, make_order,
            marketplace_status=MARKETPLACE_STATUS_UNKNOWN,
            submission_attempts=1,
            last_error={"error_code": "submission_unknown"},
        )

        result = apply_marketplace_event(order_id, "request_succeeded", {"request_id": "zx_late"})

        assert result["marketplace_order_id"] == "zx_late"
        db_session.expire_all()
        order = get_order(order_id)
        assert order.marketplace_order_id == "zx_late"
        assert order.marketplace_status == MARKETPLACE_STATUS_SUBMITTED
        assert order.status == ORDER_STATUS_PROCESSING
        assert order.last_error is None
        assert "Marketplace confirmed request zx_late" in _notes(db_session, order_id)

    def test_request_failed(self, db_session, make_order):
        order_id = self._order(db_session, make_order, marketplace_order_id="zx_fail")

        apply_marketplace_event(order_id, "request_failed", {
            "request_id": "zx_fail",
            "code": "product_unavailable",
            "message": "The product is out of stock",
        })

        db_session.expire_all()
        order = get_order(order_id)
        assert order.status == ORDER_STATUS_FAILED
        assert order.marketplace_status == MARKETPLACE_STATUS_FAILED
        assert order.last_error["error_code"] == "product_unavailable"
        assert order.last_error["message"] == "The product is out of stock"

    def test_tracking_moves_order_forward(self, db_session, make_order):
        order_id = self._order(db_session, make_order, marketplace_order_id="zx_track")

        apply_marketplace_event(order_id, "tracking_obtained", {
            "request_id": "zx_track",
            "tracking": [{"tracking_number": "1Z999", "carrier": "UPS"}],
        })
        db_session.expire_all()
        assert get_order(order_id).status == ORDER_STATUS_SHIPPED

        apply_marketplace_event(order_id, "tracking_updated", {
            "request_id": "zx_track",
            "tracking": [{"tracking_number": "1Z999", "carrier": "UPS", "delivery_status": "Delivered"}],
        })
        db_session.expire_all()
        assert get_order(order_id).status == ORDER_STATUS_DELIVERED
        assert _notes(db_session, order_id)[-2:] == ["Tracking 1Z999 (UPS)", "Tracking 1Z999 (UPS): delivered"]

    def test_late_failure_does_not_reopen_shipped_order(self, db_session, make_order):
        order_id = self._order(db_session, make_order, marketplace_order_id="zx_done", status=ORDER_STATUS_SHIPPED)

        apply_marketplace_event(order_id, "request_failed", {"request_id": "zx_done", "code": "internal_error"})

        db_session.expire_all()
        order = get_order(order_id)
        assert order.status == ORDER_STATUS_SHIPPED
        assert order.last_error is None

    def test_mismatched_request_id(self, db_session, make_order):
        order_id = self._order(db_session, make_order, marketplace_order_id="zx_ours")

        with pytest.raises(MarketplaceCallbackError):
            apply_marketplace_event(order_id, "request_failed", {"request_id": "zx_theirs"})

        db_session.expire_all()
        assert get_order(order_id).status == ORDER_STATUS_PROCESSING

    def test_unknown_order_and_event(self, db_session, make_order):
        with pytest.raises(OrderNotFoundError):
            apply_marketplace_event("no-such-order", "status_updated", {})

        order_id = self._order(db_session, make_order)
        with pytest.raises(MarketplaceCallbackError, match="Unknown marketplace event"):
            apply_marketplace_event(order_id, "order_exploded", {})

    def test_token_verification(self):
        token = marketplace_webhook_token("order-1", "s3cret")

        assert verify_marketplace_webhook_token("order-1", token, "s3cret") is True
        assert verify_marketplace_webhook_token("order-2", token, "s3cret") is False
        assert verify_marketplace_webhook_token("order-1", None, "s3cret") is False
        assert verify_marketplace_webhook_token("order-1", None, "") is True
