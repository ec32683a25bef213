"""
Entitlement models - canonical value types for resolved entitlements.

Provides:
- BillingState: user-facing commercial standing derived from the ledger
- FeatureSource: where a resolved feature came from
- UNLIMITED: sentinel for "no limit applies"
- ResolvedFeature: one feature with provenance and limits
- EntitlementSet: complete resolver output for a user
- EntitlementSnapshot: cache value wrapping an EntitlementSet

CRITICAL: EntitlementSet carries no wall-clock fields. Identical ledger,
grant and catalog inputs at the same instant produce equal values.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from thirsty.entitlements.errors import UnknownFeatureError


class BillingState(str, Enum):
    """Commercial standing used for display and denial reasons."""
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"    # past_due, inside grace window
    CANCELED = "canceled"            # cancelled, entitled until end_at
    PAST_DUE = "past_due"            # past_due, grace elapsed
    EXPIRED = "expired"              # end_at passed
    PENDING = "pending"              # purchase started, not paid
    NONE = "none"                    # never subscribed

    @property
    def is_entitling(self) -> bool:
        return self in (BillingState.ACTIVE, BillingState.GRACE_PERIOD, BillingState.CANCELED)


class FeatureSource(str, Enum):
    """Where a resolved feature originated."""
    GRANT = "grant"
    SUBSCRIPTION = "subscription"
    FREE = "free"


class Unlimited(str, Enum):
    """Marker type for limits that do not apply."""
    UNLIMITED = "unlimited"


UNLIMITED = Unlimited.UNLIMITED

# Limit mappings are read-only views; snapshots are shared by every reader
Limits = Union[Mapping[str, int], Unlimited]


@dataclass(frozen=True)
class ResolvedFeature:
    """
    A single resolved feature with provenance.

    Immutable - safe to cache and share across threads.
    """
    feature_key: str
    category: str
    granted: bool
    source: FeatureSource
    limits: Limits

    @property
    def is_unlimited(self) -> bool:
        return self.limits is UNLIMITED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_key": self.feature_key,
            "category": self.category,
            "granted": self.granted,
            "source": self.source.value,
            "limits": UNLIMITED.value if self.is_unlimited else dict(self.limits),
        }


@dataclass(frozen=True)
class EntitlementSet:
    """
    Complete resolved entitlements for a user.

    Immutable - safe to cache, share across threads, and return from APIs.
    Every catalog key has an entry; ungranted features carry free-tier limits.
    """
    user_id: str
    billing_state: BillingState
    features: Mapping[str, ResolvedFeature]
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None
    entitled_until: Optional[datetime] = None

    @property
    def resolved_features(self) -> FrozenSet[str]:
        """Feature keys currently granted."""
        return frozenset(key for key, feat in self.features.items() if feat.granted)

    @property
    def limits_by_feature(self) -> Dict[str, Limits]:
        return {key: feat.limits for key, feat in self.features.items()}

    @property
    def is_free_tier(self) -> bool:
        return not self.billing_state.is_entitling

    @property
    def is_premium(self) -> bool:
        return self.billing_state.is_entitling

    def get_feature(self, feature_key: str) -> ResolvedFeature:
        try:
            return self.features[feature_key]
        except KeyError:
            raise UnknownFeatureError(feature_key) from None

    def has_feature(self, feature_key: str) -> bool:
        feat = self.features.get(feature_key)
        return feat is not None and feat.granted

    def get_limits(self, feature_key: str) -> Limits:
        return self.get_feature(feature_key).limits

    def get_specific_limit(self, feature_key: str, limit_name: str) -> Optional[int]:
        """
        Single named limit for a feature.

        Returns None when the feature is unlimited or the limit is not set.
        """
        limits = self.get_limits(feature_key)
        if limits is UNLIMITED:
            return None
        return limits.get(limit_name)

    def features_by_category(self) -> Dict[str, List[str]]:
        """Granted feature keys grouped by category."""
        grouped: Dict[str, List[str]] = {}
        for key, feat in self.features.items():
            if feat.granted:
                grouped.setdefault(feat.category, []).append(key)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "billing_state": self.billing_state.value,
            "is_premium": self.is_premium,
            "entitled_until": self.entitled_until.isoformat() if self.entitled_until else None,
            "features": {k: v.to_dict() for k, v in self.features.items()},
        }


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Cache value. Never persisted."""
    user_id: str
    entitlements: EntitlementSet
    computed_at: datetime
    expires_at: datetime
    stale: bool = field(default=False, compare=False)

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at
