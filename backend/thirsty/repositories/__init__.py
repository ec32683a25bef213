"""Data access repositories."""

from thirsty.repositories.subscription_repository import SubscriptionRepository
from thirsty.repositories.feature_grant_repository import FeatureGrantRepository
from thirsty.repositories.webhook_event_repository import WebhookEventRepository
from thirsty.repositories.premium_flag_repository import PremiumFlagRepository

__all__ = [
    "SubscriptionRepository",
    "FeatureGrantRepository",
    "WebhookEventRepository",
    "PremiumFlagRepository",
]
