# Overview: Service-layer operations for maintenance; retention cleanup of audit data.

from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..models import GatewayWebhookEvent, SecurityEvent
from nexpos.time_utils import utcnow


def cleanup_security_events(*, retention_days: int = 90) -> int:
    """
    Delete security events older than retention_days.

    Integrity alarms are kept until an operator deletes them by hand.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(
        SecurityEvent.occurred_at < cutoff,
        SecurityEvent.event_type != "PAYMENT_INTEGRITY_ALARM",
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted


def cleanup_webhook_events(*, retention_days: int = 30) -> int:
    """Forget processed webhook ids older than the gateway's redelivery horizon."""
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(GatewayWebhookEvent).filter(
        GatewayWebhookEvent.received_at < cutoff
    ).delete(synchronize_session=False)
    db.session.commit()
    return deleted
