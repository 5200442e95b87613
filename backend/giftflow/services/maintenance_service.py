# Overview: Service-layer operations for maintenance; retention cleanup of audit tables.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import SecurityEvent, SubmissionFingerprint
from giftflow.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.

    Order notes, verification audit entries and recovery logs are kept.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_submission_fingerprints(*, retention_days: int = 30) -> int:
    """Fingerprints only matter inside the duplicate window; drop old ones."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SubmissionFingerprint).filter(
        SubmissionFingerprint.created_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
