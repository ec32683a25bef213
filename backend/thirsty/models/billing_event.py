"""
BillingEvent model for the subscription audit trail.

CRITICAL: This table is APPEND-ONLY.
Never update or delete billing events - only insert new ones.
"""

from sqlalchemy import JSON, Column, Index, String

from thirsty.models.base import Base, UTCDateTime, generate_uuid, utcnow


class BillingEventType:
    """Billing event type constants."""
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SUBSCRIPTION_SUPERSEDED = "subscription_superseded"
    SUBSCRIPTION_PERIOD_UPDATED = "subscription_period_updated"

    # Anomalies kept for manual reconciliation
    STALE_EVENT_IGNORED = "stale_event_ignored"
    INVALID_TRANSITION = "invalid_transition"
    EVENT_REJECTED = "event_rejected"

    # Administrative
    GRANT_CHANGED = "grant_changed"


class ActorType:
    """Actor type constants."""
    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"
    WEBHOOK = "webhook"
    CRON = "cron"


class BillingEvent(Base):
    """
    Immutable log of subscription ledger changes and anomalies.

    Does not use TimestampMixin - occurred_at is the provider event time
    and created_at is the insertion time.
    """

    __tablename__ = "billing_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(50), nullable=False)
    actor_type = Column(String(20), nullable=False, default=ActorType.WEBHOOK)

    subscription_id = Column(String(36), nullable=True)
    external_subscription_id = Column(String(255), nullable=True)
    provider_event_id = Column(String(255), nullable=True)

    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)

    extra_metadata = Column(JSON, nullable=True)

    occurred_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_billing_events_type_created", "event_type", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BillingEvent(event_type={self.event_type}, user_id={self.user_id}, "
            f"{self.from_status}->{self.to_status})>"
        )
