"""
Retention cleanup and CLI command tests.
"""

from datetime import timedelta

from giftflow.models import MarketplaceAccount, SecurityEvent, SubmissionFingerprint
from giftflow.services.maintenance_service import cleanup_security_events, cleanup_submission_fingerprints
from giftflow.time_utils import utcnow


def _event(days_old: int) -> SecurityEvent:
    return SecurityEvent(
        user_id="user-1",
        event_type="rate_limit_exceeded",
        severity="warning",
        occurred_at=utcnow() - timedelta(days=days_old),
    )


def _fingerprint(days_old: int, order_hash: str) -> SubmissionFingerprint:
    return SubmissionFingerprint(
        user_id="user-1",
        order_id=f"order-{order_hash[:4]}",
        order_hash=order_hash,
        created_at=utcnow() - timedelta(days=days_old),
    )


class TestRetention:
    def test_security_events(self, db_session):
        db_session.add_all([_event(120), _event(91), _event(10)])
        db_session.commit()

        assert cleanup_security_events(retention_days=90) == 2
        assert db_session.query(SecurityEvent).count() == 1

    def test_fingerprints(self, db_session):
        db_session.add_all([_fingerprint(45, "a" * 64), _fingerprint(1, "b" * 64)])
        db_session.commit()

        assert cleanup_submission_fingerprints(retention_days=30) == 1
        assert db_session.query(SubmissionFingerprint).one().order_hash == "b" * 64


class TestCommands:
    def test_add_account_and_list(self, app, db_session):
        runner = app.test_cli_runner()

        result = runner.invoke(args=[
            "marketplace", "add-account",
            "--name", "backup", "--api-key", "zinc_backup", "--default",
        ])
        assert result.exit_code == 0
        assert "PASS Created marketplace account: backup" in result.output

        duplicate = runner.invoke(args=["marketplace", "add-account", "--name", "backup", "--api-key", "x"])
        assert "FAIL Account 'backup' already exists" in duplicate.output

        listing = runner.invoke(args=["marketplace", "list"])
        assert "backup" in listing.output

        db_session.expire_all()
        account = db_session.query(MarketplaceAccount).filter_by(account_name="backup").one()
        assert account.is_default is True

    def test_incomplete_payment_method_warns(self, app, db_session):
        result = app.test_cli_runner().invoke(args=[
            "marketplace", "add-payment-method", "--name-on-card", "GiftFlow Inc",
        ])
        assert result.exit_code == 0
        assert "WARN" in result.output

    def test_stuck_orders(self, app, db_session, make_order):
        runner = app.test_cli_runner()
        assert "No stuck orders found." in runner.invoke(args=["orders", "stuck"]).output

        order = make_order(paid=True)
        order_number = order.order_number
        result = runner.invoke(args=["orders", "stuck"])
        assert order_number in result.output

    def test_recover_unknown_order(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["orders", "recover", "--order-id", "nope"])
        assert "FAIL Order nope not found" in result.output

    def test_cleanup_command(self, app, db_session):
        db_session.add(_event(200))
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["maintenance", "cleanup-security-events"])

        assert "Deleted 1 security events older than 90 days." in result.output
