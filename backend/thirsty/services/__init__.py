"""
Business logic services.
"""

from thirsty.services.subscription_sync import SubscriptionSynchronizer, ApplyOutcome, ApplyResult
from thirsty.services.grant_service import GrantService
from thirsty.services.subscription_service import SubscriptionService

__all__ = [
    "SubscriptionSynchronizer",
    "ApplyOutcome",
    "ApplyResult",
    "GrantService",
    "SubscriptionService",
]
