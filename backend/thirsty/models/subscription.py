"""
Subscription ledger model.

One row per purchase. Status is driven exclusively by provider webhooks
through the subscription synchronizer; nothing else writes it.

CRITICAL: `expired` is never written. A record whose end_at has passed is
interpreted as expired at read time by the entitlement resolver.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, Index, String

from thirsty.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    PENDING = "pending"          # Payment intent created, awaiting success event
    ACTIVE = "active"            # Paid and within period
    PAST_DUE = "past_due"        # Renewal payment failed, grace window running
    CANCELLED = "cancelled"      # Cancelled; entitled until end_at
    EXPIRED = "expired"          # Read-time interpretation only


class SubscriptionRecord(Base, TimestampMixin):
    """
    Subscription ledger entry for a single user purchase.

    CRITICAL DESIGN:
    - At most one record per user is ACTIVE with end_at in the future.
      The synchronizer enforces this when it activates a new purchase.
    - last_event_at holds the provider timestamp of the last applied event
      so older deliveries can be recognised and skipped.
    - past_due_since starts the grace window clock on the first failed
      renewal and is kept across repeated failures.
    """

    __tablename__ = "user_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user"
    )
    plan_id = Column(
        String(64),
        nullable=False,
        comment="Plan identifier from the feature catalog"
    )

    # Provider references
    external_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Provider subscription/payment id; null until first successful charge"
    )
    external_customer_id = Column(
        String(255),
        nullable=True,
        comment="Provider customer id"
    )

    # Lifecycle
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.PENDING.value,
    )
    start_at = Column(UTCDateTime(), nullable=True)
    end_at = Column(UTCDateTime(), nullable=True)
    auto_renew = Column(Boolean, nullable=False, default=False)
    past_due_since = Column(
        UTCDateTime(),
        nullable=True,
        comment="First failed renewal; grace window is measured from here"
    )
    cancelled_at = Column(UTCDateTime(), nullable=True)
    last_event_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="occurred_at of the last applied provider event"
    )
    last_invoice_id = Column(
        String(255),
        nullable=True,
        comment="Last invoice that extended the period"
    )

    __table_args__ = (
        Index("ix_user_subscriptions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(id={self.id}, user_id={self.user_id}, "
            f"plan_id={self.plan_id}, status={self.status})>"
        )
