"""
Entitlement query service used by feature gates and the entitlement API.

Every query goes through the EntitlementCache, so answers are at most one
TTL stale and survive short ledger outages (see cache fail-open rules).
Unknown feature keys raise UnknownFeatureError instead of silently
answering "not entitled".
"""

import logging
from typing import Dict, Iterable, List, Optional

from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache
from thirsty.entitlements.catalog import FeatureCatalog, get_feature_catalog
from thirsty.entitlements.models import EntitlementSet, EntitlementSnapshot, Limits

logger = logging.getLogger(__name__)


class EntitlementService:
    """
    Read-only entitlement queries for one process.

    Usage:
        service = EntitlementService()
        if service.has_feature(user_id, "unlimited_messages"):
            ...
        limits = service.get_limits(user_id, "unlimited_photos")
    """

    def __init__(
        self,
        cache: Optional[EntitlementCache] = None,
        catalog: Optional[FeatureCatalog] = None,
    ):
        self._cache = cache or get_entitlement_cache()
        self._catalog = catalog

    @property
    def catalog(self) -> FeatureCatalog:
        # Follows reload_feature_catalog() unless a catalog was injected
        return self._catalog if self._catalog is not None else get_feature_catalog()

    def _check_key(self, feature_key: str) -> None:
        # Raises UnknownFeatureError
        self.catalog.get_feature(feature_key)

    def get_all(self, user_id: str) -> EntitlementSet:
        return self._cache.get(user_id)

    def get_snapshot(self, user_id: str) -> EntitlementSnapshot:
        """Cached snapshot, including whether it is a stale fallback."""
        return self._cache.get_snapshot(user_id)

    def has_feature(self, user_id: str, feature_key: str) -> bool:
        self._check_key(feature_key)
        return self._cache.get(user_id).has_feature(feature_key)

    def get_limits(self, user_id: str, feature_key: str) -> Limits:
        """Limits for a feature, or UNLIMITED."""
        self._check_key(feature_key)
        return self._cache.get(user_id).get_limits(feature_key)

    def get_specific_limit(self, user_id: str, feature_key: str, limit_name: str) -> Optional[int]:
        """
        One named limit for a feature.

        Returns:
            The limit value, or None when the feature is unlimited
        """
        self._check_key(feature_key)
        return self._cache.get(user_id).get_specific_limit(feature_key, limit_name)

    def has_any_feature(self, user_id: str, feature_keys: Iterable[str]) -> bool:
        keys = list(feature_keys)
        for key in keys:
            self._check_key(key)
        entitlements = self._cache.get(user_id)
        return any(entitlements.has_feature(key) for key in keys)

    def has_all_features(self, user_id: str, feature_keys: Iterable[str]) -> bool:
        keys = list(feature_keys)
        for key in keys:
            self._check_key(key)
        entitlements = self._cache.get(user_id)
        return all(entitlements.has_feature(key) for key in keys)

    def features_by_category(self, user_id: str) -> Dict[str, List[str]]:
        """Granted feature keys grouped by catalog category."""
        return self._cache.get(user_id).features_by_category()

    def is_free_tier(self, user_id: str) -> bool:
        return self._cache.get(user_id).is_free_tier

    def prefetch(self, user_ids: Iterable[str]) -> int:
        """
        Warm the cache for a batch of users (e.g. a discovery page).

        Returns:
            Number of users resolved
        """
        count = 0
        for user_id in user_ids:
            self._cache.get_snapshot(user_id)
            count += 1
        logger.debug("Prefetched entitlements", extra={"count": count})
        return count
