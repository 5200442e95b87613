"""
Recovery panel tests.

Verifies:
- Stuck-order candidate selection
- Resubmission through the normal submitter
- An error with a marketplace id present is reported as recovered
- Every attempt writes a RecoveryLog
"""

from datetime import timedelta

import pytest

from giftflow.extensions import db
from giftflow.models import RecoveryLog
from giftflow.models.orders import ORDER_STATUS_SCHEDULED
from giftflow.services import recovery_service
from giftflow.services.fulfillment_service import MarketplaceUnavailableError
from giftflow.services.order_service import get_order
from giftflow.services.recovery_service import (
    OUTCOME_ALREADY_SUBMITTED,
    OUTCOME_BLOCKED,
    OUTCOME_FAILED,
    OUTCOME_RECOVERED,
    RecoveryError,
    list_stuck_orders,
    recover_order,
    recover_stuck_orders,
)
from giftflow.time_utils import utcnow


def _logs(db_session, order_id):
    return db_session.query(RecoveryLog).filter_by(order_id=order_id).order_by(RecoveryLog.id).all()


class TestCandidates:
    def test_selection(self, db_session, make_order):
        stuck = make_order(paid=True)
        make_order()  # payment pending
        submitted = make_order(paid=True)
        submitted.marketplace_order_id = "zx_done"
        scheduled = make_order(paid=True)
        scheduled.status = ORDER_STATUS_SCHEDULED
        old = make_order(paid=True)
        old.created_at = utcnow() - timedelta(days=30)
        db_session.commit()

        candidates = list_stuck_orders()

        assert [c["id"] for c in candidates] == [stuck.id]
        row = candidates[0]
        assert row["order_number"] == stuck.order_number
        assert row["total_amount"] == "35.00"
        assert row["customer"] == "ada@example.com"
        assert row["submission_attempts"] == 0

    def test_lookback_and_limit(self, db_session, make_order):
        for _ in range(3):
            make_order(paid=True)
        assert len(list_stuck_orders(limit=2)) == 2
        assert len(list_stuck_orders(lookback_days=0)) == 0


class TestRecoverOrder:
    def test_recovered(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(200, {"request_id": "zx_recovered"})

        result = recover_order(order.id)

        assert result["outcome"] == OUTCOME_RECOVERED
        assert result["marketplace_order_id"] == "zx_recovered"
        assert marketplace.requests[0]["client_notes"]["trigger_source"] == "manual_recovery"
        log = _logs(db_session, order.id)[0]
        assert log.recovery_status == "completed"
        assert log.trigger_source == "manual_recovery"

    def test_already_submitted(self, db_session, marketplace_account, make_order):
        order = make_order(paid=True)
        order.marketplace_order_id = "zx_earlier"
        db_session.commit()

        result = recover_order(order.id)

        assert result["outcome"] == OUTCOME_ALREADY_SUBMITTED
        assert _logs(db_session, order.id)[0].recovery_status == "skipped"

    def test_marketplace_failure(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True)
        marketplace.queue_response(500, "Internal Server Error")

        result = recover_order(order.id)

        assert result["success"] is False
        assert result["outcome"] == OUTCOME_FAILED
        assert result["error_type"] == "MarketplaceOrderError"
        log = _logs(db_session, order.id)[0]
        assert log.recovery_status == "failed"
        assert "HTTP 500" in log.error_message

    def test_error_with_marketplace_id_present_is_recovered(self, db_session, make_order, monkeypatch):
        order = make_order(paid=True)
        order_id = order.id

        def _submit_then_time_out(order_id, **kwargs):
            current = get_order(order_id)
            current.marketplace_order_id = "zx_late"
            db.session.commit()
            raise MarketplaceUnavailableError("read timed out")

        monkeypatch.setattr(recovery_service, "submit_order", _submit_then_time_out)

        result = recover_order(order_id)

        assert result["success"] is True
        assert result["outcome"] == OUTCOME_RECOVERED
        assert result["marketplace_order_id"] == "zx_late"
        assert result["verified_after_error"] is True
        log = _logs(db_session, order_id)[0]
        assert log.recovery_status == "completed"
        assert log.details["verified_after_error"] is True

    def test_unexpected_error_reported(self, db_session, make_order, monkeypatch):
        order = make_order(paid=True)

        def _explode(order_id, **kwargs):
            raise RuntimeError("worker crashed")

        monkeypatch.setattr(recovery_service, "submit_order", _explode)

        result = recover_order(order.id)

        assert result["outcome"] == OUTCOME_FAILED
        assert result["error_type"] == "RuntimeError"

    def test_blocked(self, db_session, marketplace, marketplace_account, make_order):
        order = make_order(paid=True, total_amount="0.00", shipping_cost="0", tax_amount="0", gifting_fee="0",
                           items=[{"product_id": "FREEBIE", "quantity": 1, "unit_price": "0.00"}])

        result = recover_order(order.id)

        assert result["outcome"] == OUTCOME_BLOCKED
        assert result["reasons"] == ["Order amount must be positive"]
        assert _logs(db_session, order.id)[0].recovery_status == "skipped"
        assert marketplace.requests == []

    def test_invalid_trigger(self, db_session, make_order):
        order = make_order(paid=True)
        with pytest.raises(RecoveryError):
            recover_order(order.id, trigger_source="cron")

    def test_missing_order(self, db_session):
        with pytest.raises(RecoveryError, match="not found"):
            recover_order("nope")


def test_sweep_summary(db_session, marketplace, marketplace_account, make_order):
    ok = make_order(paid=True)
    bad = make_order(paid=True)
    marketplace.queue_response(422, {"code": "invalid_shipping_address"})
    marketplace.queue_response(200, {"request_id": "zx_sweep"})

    summary = recover_stuck_orders()

    assert summary["candidates"] == 2
    assert summary["recovered"] == 1
    assert summary["failed"] == 1
    assert {r["order_id"] for r in summary["results"]} == {ok.id, bad.id}
    assert all(log.trigger_source == "webhook_recovery" for log in db_session.query(RecoveryLog))
