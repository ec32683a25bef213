"""
ProcessedWebhookEvent model for tracking consumed provider webhooks.

Used for idempotency - ensures webhooks are applied exactly once.
Rows older than the retention window are purged by
thirsty.jobs.webhook_event_retention.
"""

import uuid

from sqlalchemy import Column, Index, String

from thirsty.db_base import Base
from thirsty.models.base import UTCDateTime, utcnow


class WebhookOutcome:
    """Recorded outcome of a consumed event."""
    APPLIED = "applied"
    IGNORED = "ignored"          # unknown type, stale or illegal transition
    REJECTED = "rejected"        # permanent failure, acknowledged
    ORPHANED = "orphaned"        # referred to a subscription not yet in the ledger


class ProcessedWebhookEvent(Base):
    """
    Tracks consumed provider webhook events for deduplication.

    Stripe may deliver a webhook multiple times. The unique constraint on
    provider_event_id is the final arbiter: a concurrent duplicate insert
    fails and the caller reports the event as a duplicate.

    Events that arrive before the purchase they refer to (for example a
    deletion overtaking payment_intent.succeeded) are stored as ORPHANED
    with their ledger action, and replayed when the purchase is applied.
    """

    __tablename__ = "webhook_events"

    id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    provider_event_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider event id (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        comment="Provider event type (e.g., customer.subscription.deleted)"
    )

    user_id = Column(String(255), nullable=True)

    external_subscription_id = Column(
        String(255),
        nullable=True,
        comment="Subscription the event referred to, if any"
    )

    outcome = Column(String(20), nullable=False, default=WebhookOutcome.APPLIED)

    # Kept for orphaned events so they can be replayed once the purchase lands
    ledger_action = Column(String(40), nullable=True)
    period_end = Column(UTCDateTime(), nullable=True)
    invoice_id = Column(String(255), nullable=True)

    occurred_at = Column(
        UTCDateTime(),
        nullable=False,
        comment="Provider-side event timestamp"
    )

    payload_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 hash of payload for debugging"
    )

    processed_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the event was consumed"
    )

    __table_args__ = (
        Index("ix_webhook_events_processed_at", "processed_at"),
        Index("ix_webhook_events_external_subscription", "external_subscription_id", "outcome"),
    )

    def __repr__(self) -> str:
        return (
            f"<ProcessedWebhookEvent(provider_event_id={self.provider_event_id}, "
            f"event_type={self.event_type}, outcome={self.outcome})>"
        )
