"""
Entitlement resolution for feature-gated access.

This module provides:
- FeatureCatalog: Feature keys, categories, free-tier limits and plans from YAML
- resolve_entitlements / EntitlementResolver: Layered resolution of a user's features
- EntitlementCache: TTL + single-flight snapshot cache with invalidation
- RedisInvalidationBus: Cross-process cache invalidation over redis pub/sub
- EntitlementService: Query API used by feature gates and routes

Resolution order: grant → plan → free tier
Grace period: 3 days (configurable via billing.grace_period_days)
"""

from thirsty.entitlements.catalog import (
    FeatureCatalog,
    FeatureDefinition,
    PlanDefinition,
    PlanFeature,
    get_feature_catalog,
    reload_feature_catalog,
    reset_feature_catalog,
)
from thirsty.entitlements.errors import (
    CatalogConfigError,
    EntitlementDeniedError,
    EntitlementError,
    EntitlementEvaluationError,
    ResolverStorageError,
    UnknownFeatureError,
)
from thirsty.entitlements.models import (
    UNLIMITED,
    BillingState,
    EntitlementSet,
    EntitlementSnapshot,
    FeatureSource,
    ResolvedFeature,
)
from thirsty.entitlements.resolver import EntitlementResolver, resolve_entitlements
from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache
from thirsty.entitlements.service import EntitlementService

__all__ = [
    "FeatureCatalog",
    "FeatureDefinition",
    "PlanDefinition",
    "PlanFeature",
    "get_feature_catalog",
    "reload_feature_catalog",
    "reset_feature_catalog",
    "CatalogConfigError",
    "EntitlementDeniedError",
    "EntitlementError",
    "EntitlementEvaluationError",
    "ResolverStorageError",
    "UnknownFeatureError",
    "UNLIMITED",
    "BillingState",
    "EntitlementSet",
    "EntitlementSnapshot",
    "FeatureSource",
    "ResolvedFeature",
    "EntitlementResolver",
    "resolve_entitlements",
    "EntitlementCache",
    "get_entitlement_cache",
    "EntitlementService",
]
