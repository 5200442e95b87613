"""
Verify -> schedule -> submit pipeline tests.

Verifies:
- Near-term orders are submitted right after verification
- Far-future gifts are held as scheduled and released later
- Fulfillment failures never fail the verification itself
"""

from datetime import timedelta

from giftflow.integrations import MARKETPLACE_KEY

from giftflow.models.orders import (
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SCHEDULED,
    PAYMENT_STATUS_SUCCEEDED,
)
from giftflow.services.order_flow_service import process_paid_session, release_scheduled_orders
from giftflow.services.order_service import get_order
from giftflow.services.recovery_service import list_stuck_orders
from giftflow.time_utils import utctoday


def _groups(near_days: int, far_days: int) -> dict:
    today = utctoday()
    return {
        "A": {"items": ["p1"], "scheduledDeliveryDate": (today + timedelta(days=near_days)).isoformat()},
        "B": {"items": ["p2"], "scheduledDeliveryDate": (today + timedelta(days=far_days)).isoformat()},
    }


def test_paid_session_submitted_immediately(db_session, payments, marketplace, marketplace_account, make_order):
    order = make_order(checkout_session_id="cs_flow")
    payments.add_session("cs_flow", payment_intent_id="pi_flow", amount_total=3500)

    response = process_paid_session("cs_flow")

    assert response["success"] is True
    assert response["order_number"] == order.order_number
    assert response["scheduled"] is False
    assert response["fulfillment"]["success"] is True

    order = get_order(order.id)
    assert order.payment_status == PAYMENT_STATUS_SUCCEEDED
    assert order.marketplace_order_id == response["fulfillment"]["marketplace_order_id"]
    assert len(marketplace.requests) == 1


def test_far_future_delivery_is_scheduled(db_session, payments, marketplace, marketplace_account, make_order):
    order = make_order(checkout_session_id="cs_later")
    payments.add_session("cs_later", amount_total=3500, metadata={"delivery_groups": _groups(2, 10)})

    response = process_paid_session("cs_later")

    today = utctoday()
    assert response["success"] is True
    assert response["scheduled"] is True
    assert response["processing_date"] == (today + timedelta(days=6)).isoformat()
    assert response["scheduled_delivery_date"] == (today + timedelta(days=2)).isoformat()

    order = get_order(order.id)
    assert order.status == ORDER_STATUS_SCHEDULED
    assert order.scheduled_delivery_date == today + timedelta(days=2)
    assert set(order.delivery_groups) == {"A", "B"}
    assert marketplace.requests == []


def test_second_verification_does_not_resubmit(db_session, payments, marketplace, marketplace_account, make_order):
    make_order(checkout_session_id="cs_dup")
    payments.add_session("cs_dup", amount_total=3500)

    process_paid_session("cs_dup")
    response = process_paid_session("cs_dup", trigger_source="webhook")

    assert response["success"] is True
    assert response["already_processed"] is True
    assert len(marketplace.requests) == 1


def test_unpaid_session(db_session, payments, make_order):
    make_order(checkout_session_id="cs_open")
    payments.add_session("cs_open", payment_status="unpaid")

    response = process_paid_session("cs_open")

    assert response == {"success": False, "payment_status": "unpaid", "error": "Payment not completed"}


def test_fulfillment_failure_reported_not_raised(db_session, payments, marketplace, marketplace_account, make_order):
    make_order(checkout_session_id="cs_reject")
    payments.add_session("cs_reject", amount_total=3500)
    marketplace.queue_response(400, {"code": "max_price_exceeded"})

    response = process_paid_session("cs_reject")

    assert response["success"] is True
    assert response["fulfillment"]["success"] is False
    assert response["fulfillment"]["error_type"] == "MarketplaceOrderError"


def test_missing_account_leaves_recovery_candidate(db_session, payments, make_order):
    order = make_order(checkout_session_id="cs_noacct")
    payments.add_session("cs_noacct", amount_total=3500)

    response = process_paid_session("cs_noacct")

    assert response["fulfillment"]["error_type"] == "MarketplaceConfigurationError"
    assert get_order(order.id).status == ORDER_STATUS_PROCESSING
    assert [o["id"] for o in list_stuck_orders()] == [order.id]


def test_unavailable_marketplace_client_leaves_recovery_candidate(app, db_session, payments, marketplace_account, make_order, monkeypatch):
    order = make_order(checkout_session_id="cs_noclient")
    payments.add_session("cs_noclient", amount_total=3500)
    monkeypatch.setitem(app.extensions, MARKETPLACE_KEY, None)

    response = process_paid_session("cs_noclient")

    assert response["success"] is True
    assert response["fulfillment"]["success"] is False
    assert response["fulfillment"]["error_type"] == "MarketplaceConfigurationError"
    order = get_order(order.id)
    assert order.status == ORDER_STATUS_PROCESSING
    assert order.submission_attempts == 0
    assert [o["id"] for o in list_stuck_orders()] == [order.id]


class TestScheduledRelease:
    def test_held_until_processing_date(self, db_session, payments, marketplace, marketplace_account, make_order):
        order = make_order(checkout_session_id="cs_hold")
        payments.add_session("cs_hold", amount_total=3500, metadata={"delivery_groups": _groups(2, 10)})
        process_paid_session("cs_hold")

        early = release_scheduled_orders()
        assert early["checked"] == 1
        assert early["still_scheduled"] == 1
        assert early["released"] == 0
        assert get_order(order.id).status == ORDER_STATUS_SCHEDULED

        due = release_scheduled_orders(today=utctoday() + timedelta(days=6))
        assert due["released"] == 1
        assert due["submitted"] == 1

        order = get_order(order.id)
        assert order.status == ORDER_STATUS_PROCESSING
        assert order.marketplace_order_id is not None
        assert marketplace.requests[0]["client_notes"]["trigger_source"] == "scheduled_release"

    def test_release_failure_counted(self, db_session, payments, marketplace, marketplace_account, make_order):
        order = make_order(checkout_session_id="cs_hold_fail", scheduled_delivery_date=(utctoday() + timedelta(days=9)).isoformat())
        payments.add_session("cs_hold_fail", amount_total=3500)
        process_paid_session("cs_hold_fail")
        assert get_order(order.id).status == ORDER_STATUS_SCHEDULED

        marketplace.queue_transport_error("connect timeout")
        summary = release_scheduled_orders(today=utctoday() + timedelta(days=9))

        assert summary["released"] == 1
        assert summary["failed"] == 1
        assert summary["results"][0]["error_type"] == "MarketplaceUnavailableError"
        assert get_order(order.id).status == ORDER_STATUS_PROCESSING
