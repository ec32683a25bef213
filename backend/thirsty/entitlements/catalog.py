"""
Feature Catalog - load feature definitions and plans from config/feature_catalog.yml.

Provides:
- FeatureDefinition: a catalog entry (category, limit schema, free-tier limits)
- PlanDefinition: a purchasable plan and the features it enables
- FeatureCatalog: validated, immutable view over the YAML file
- get_feature_catalog(): thread-safe process singleton

CRITICAL: This is the source of truth for feature keys and limits.
Do NOT hardcode feature keys or free-tier limits elsewhere.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from thirsty.entitlements.errors import CatalogConfigError, UnknownFeatureError

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "feature_catalog.yml"
DEFAULT_GRACE_PERIOD_DAYS = 3

KNOWN_CATEGORIES = (
    "messaging",
    "discovery",
    "profile",
    "privacy",
    "interactions",
    "general",
)


@dataclass(frozen=True)
class FeatureDefinition:
    """Single catalog entry."""

    key: str
    name: str
    category: str
    description: str = ""
    limit_schema: Tuple[str, ...] = ()
    free_limits: Mapping[str, int] = field(default_factory=dict)

    @property
    def is_limit_based(self) -> bool:
        return bool(self.limit_schema)


@dataclass(frozen=True)
class PlanFeature:
    """A plan's configuration for one feature key."""

    feature_key: str
    enabled: bool
    limits: Optional[Mapping[str, int]] = None  # None = unlimited

    @property
    def is_unlimited(self) -> bool:
        return self.enabled and not self.limits


@dataclass(frozen=True)
class PlanDefinition:
    """Purchasable plan."""

    plan_id: str
    name: str
    duration_days: int
    features: Mapping[str, PlanFeature] = field(default_factory=dict)

    @property
    def duration(self) -> timedelta:
        return timedelta(days=self.duration_days)

    def get_feature(self, feature_key: str) -> Optional[PlanFeature]:
        return self.features.get(feature_key)

    def enables(self, feature_key: str) -> bool:
        feature = self.features.get(feature_key)
        return feature is not None and feature.enabled


class FeatureCatalog:
    """
    Validated feature catalog.

    Construction fails fast with CatalogConfigError when:
    - a feature has an unknown category or a duplicate key
    - free limits name a limit outside the feature's limit schema
    - a plan references a feature key with no catalog entry
    - a plan limit names a limit outside the feature's limit schema

    Usage:
        catalog = get_feature_catalog()
        catalog.category("unlimited_messages")        # "messaging"
        catalog.default_limits("unlimited_messages")  # {"max_messages_per_day": 50}
    """

    def __init__(self, raw: Dict[str, Any], source: str = "<dict>"):
        self._source = source
        self._features: Dict[str, FeatureDefinition] = {}
        self._plans: Dict[str, PlanDefinition] = {}
        self._grace_period = timedelta(days=DEFAULT_GRACE_PERIOD_DAYS)

        if not isinstance(raw, dict):
            raise CatalogConfigError(f"{source}: catalog root must be a mapping")

        self._categories = tuple(raw.get("categories") or KNOWN_CATEGORIES)
        self._parse_billing(raw.get("billing") or {})
        self._parse_features(raw.get("features") or [])
        self._parse_plans(raw.get("plans") or [])

        logger.info("Loaded feature catalog", extra={
            "source": source,
            "feature_count": len(self._features),
            "plan_count": len(self._plans),
        })

    @classmethod
    def from_file(cls, config_path: Path) -> "FeatureCatalog":
        """Load and validate a catalog YAML file."""
        try:
            with open(config_path, "r") as f:
                raw = yaml.safe_load(f)
        except FileNotFoundError as exc:
            raise CatalogConfigError(f"Feature catalog not found: {config_path}") from exc
        except yaml.YAMLError as exc:
            raise CatalogConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        return cls(raw, source=str(config_path))

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def _parse_billing(self, billing: Dict[str, Any]) -> None:
        days = billing.get("grace_period_days", DEFAULT_GRACE_PERIOD_DAYS)
        if not isinstance(days, (int, float)) or days < 0:
            raise CatalogConfigError(
                f"{self._source}: billing.grace_period_days must be a non-negative number"
            )
        self._grace_period = timedelta(days=days)

    def _parse_features(self, features: List[Dict[str, Any]]) -> None:
        for entry in features:
            key = entry.get("key")
            if not key:
                raise CatalogConfigError(f"{self._source}: feature entry without key: {entry}")
            if key in self._features:
                raise CatalogConfigError(f"{self._source}: duplicate feature key {key!r}")

            category = entry.get("category", "general")
            if category not in self._categories:
                raise CatalogConfigError(
                    f"{self._source}: feature {key!r} has unknown category {category!r}"
                )

            schema = tuple(entry.get("limits") or ())
            free_limits = dict(entry.get("free_limits") or {})
            self._check_limit_names(key, free_limits, schema, context="free_limits")

            self._features[key] = FeatureDefinition(
                key=key,
                name=entry.get("name", key),
                category=category,
                description=entry.get("description", ""),
                limit_schema=schema,
                free_limits=free_limits,
            )

    def _parse_plans(self, plans: List[Dict[str, Any]]) -> None:
        for entry in plans:
            plan_id = entry.get("id")
            if not plan_id:
                raise CatalogConfigError(f"{self._source}: plan entry without id")

            duration_days = entry.get("duration_days")
            if not isinstance(duration_days, int) or duration_days <= 0:
                raise CatalogConfigError(
                    f"{self._source}: plan {plan_id!r} needs a positive integer duration_days"
                )

            features: Dict[str, PlanFeature] = {}
            for key, value in (entry.get("features") or {}).items():
                definition = self._features.get(key)
                if definition is None:
                    raise CatalogConfigError(
                        f"{self._source}: plan {plan_id!r} references unknown feature {key!r}"
                    )
                if isinstance(value, bool):
                    value = {"enabled": value}
                limits = value.get("limits") or None
                if limits is not None:
                    self._check_limit_names(
                        key, limits, definition.limit_schema, context=f"plan {plan_id!r}"
                    )
                    limits = dict(limits)
                features[key] = PlanFeature(
                    feature_key=key,
                    enabled=bool(value.get("enabled", False)),
                    limits=limits,
                )

            self._plans[plan_id] = PlanDefinition(
                plan_id=plan_id,
                name=entry.get("name", plan_id),
                duration_days=duration_days,
                features=features,
            )

    def _check_limit_names(
        self,
        feature_key: str,
        limits: Mapping[str, Any],
        schema: Tuple[str, ...],
        context: str,
    ) -> None:
        unknown = [name for name in limits if name not in schema]
        if unknown:
            raise CatalogConfigError(
                f"{self._source}: {context} sets limits {unknown} not declared "
                f"for feature {feature_key!r}"
            )
        for name, value in limits.items():
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise CatalogConfigError(
                    f"{self._source}: {context} limit {feature_key}.{name} must be a "
                    f"non-negative integer"
                )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_feature(self, feature_key: str) -> FeatureDefinition:
        """Get a catalog entry, raising UnknownFeatureError if absent."""
        try:
            return self._features[feature_key]
        except KeyError:
            raise UnknownFeatureError(feature_key) from None

    def has_feature(self, feature_key: str) -> bool:
        return feature_key in self._features

    def category(self, feature_key: str) -> str:
        return self.get_feature(feature_key).category

    def default_limits(self, feature_key: str) -> Dict[str, int]:
        """Free-tier limits for a feature (empty for on/off features)."""
        return dict(self.get_feature(feature_key).free_limits)

    def feature_keys(self) -> List[str]:
        """All feature keys, in catalog order."""
        return list(self._features)

    def features(self) -> List[FeatureDefinition]:
        return list(self._features.values())

    def features_by_category(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {category: [] for category in self._categories}
        for definition in self._features.values():
            grouped[definition.category].append(definition.key)
        return grouped

    def get_plan(self, plan_id: str) -> Optional[PlanDefinition]:
        return self._plans.get(plan_id)

    def plans(self) -> List[PlanDefinition]:
        return list(self._plans.values())

    @property
    def grace_period(self) -> timedelta:
        return self._grace_period

    @property
    def categories(self) -> Tuple[str, ...]:
        return self._categories


def _resolve_catalog_path(config_path: Optional[str] = None) -> Path:
    """Resolve the catalog file path."""
    explicit = config_path or os.getenv("FEATURE_CATALOG_PATH")
    if explicit:
        return Path(explicit)

    possible_paths = [
        Path(__file__).parent.parent.parent / "config" / CATALOG_FILENAME,  # backend/config/
        Path(os.getcwd()) / "config" / CATALOG_FILENAME,
        Path(os.getcwd()) / "backend" / "config" / CATALOG_FILENAME,
    ]

    for path in possible_paths:
        if path.exists():
            return path

    raise CatalogConfigError(
        f"{CATALOG_FILENAME} not found in any of: {[str(p) for p in possible_paths]}"
    )


# Module-level singleton
_catalog_instance: Optional[FeatureCatalog] = None
_catalog_lock = Lock()


def get_feature_catalog(config_path: Optional[str] = None) -> FeatureCatalog:
    """Get the singleton FeatureCatalog, loading it on first use."""
    global _catalog_instance
    if _catalog_instance is None:
        with _catalog_lock:
            if _catalog_instance is None:
                _catalog_instance = FeatureCatalog.from_file(_resolve_catalog_path(config_path))
    return _catalog_instance


def reload_feature_catalog(config_path: Optional[str] = None) -> FeatureCatalog:
    """
    Reload the catalog from disk (atomic swap).

    The new catalog is fully validated before it replaces the old one, so a
    broken file leaves the previous catalog in place. Every cached snapshot
    is dropped once the swap succeeds.
    """
    global _catalog_instance
    logger.info("Reloading feature catalog")
    try:
        catalog = FeatureCatalog.from_file(_resolve_catalog_path(config_path))
    except CatalogConfigError:
        logger.error("Feature catalog reload failed, keeping previous catalog", exc_info=True)
        raise
    with _catalog_lock:
        _catalog_instance = catalog

    from thirsty.entitlements.cache import get_entitlement_cache
    get_entitlement_cache().invalidate_all(reason="catalog_reloaded")
    return catalog


def reset_feature_catalog() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _catalog_instance
    with _catalog_lock:
        _catalog_instance = None
