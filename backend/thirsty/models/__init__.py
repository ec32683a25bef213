"""
Database models for the subscription ledger, grants and webhook bookkeeping.

Importing this package registers every table on thirsty.db_base.Base.
"""

from thirsty.models.base import TimestampMixin, UTCDateTime
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus
from thirsty.models.feature_grant import FeatureGrant
from thirsty.models.webhook_event import ProcessedWebhookEvent, WebhookOutcome
from thirsty.models.premium_flag import ProfilePremiumFlag
from thirsty.models.billing_event import BillingEvent, BillingEventType, ActorType

__all__ = [
    "TimestampMixin",
    "UTCDateTime",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "FeatureGrant",
    "ProcessedWebhookEvent",
    "WebhookOutcome",
    "ProfilePremiumFlag",
    "BillingEvent",
    "BillingEventType",
    "ActorType",
]
