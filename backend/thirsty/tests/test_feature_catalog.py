"""
Tests for the feature catalog loader.

Test classes:
- TestShippedCatalog: The YAML in backend/config loads and is consistent
- TestCatalogValidation: Broken catalogs fail fast with CatalogConfigError
- TestCatalogSingleton: get/reload/reset behaviour
"""

from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from thirsty.entitlements.catalog import (
    FeatureCatalog,
    get_feature_catalog,
    reload_feature_catalog,
)
from thirsty.entitlements.cache import EntitlementCache, set_entitlement_cache
from thirsty.entitlements.errors import CatalogConfigError, UnknownFeatureError
from thirsty.entitlements.resolver import EntitlementResolver
from thirsty.entitlements.service import EntitlementService

SHIPPED_CATALOG = Path(__file__).resolve().parents[2] / "config" / "feature_catalog.yml"


def _minimal_catalog(**overrides) -> dict:
    raw = {
        "billing": {"grace_period_days": 3},
        "categories": ["messaging", "profile"],
        "features": [
            {
                "key": "unlimited_messages",
                "category": "messaging",
                "limits": ["max_messages_per_day"],
                "free_limits": {"max_messages_per_day": 50},
            },
            {"key": "verified_badge", "category": "profile"},
        ],
        "plans": [
            {
                "id": "premium_monthly",
                "duration_days": 30,
                "features": {"unlimited_messages": {"enabled": True}},
            },
        ],
    }
    raw.update(overrides)
    return raw


class TestShippedCatalog:
    """The catalog file shipped with the service."""

    def test_known_feature_lookups(self, catalog):
        assert catalog.category("unlimited_messages") == "messaging"
        assert catalog.default_limits("unlimited_messages") == {"max_messages_per_day": 50}
        assert catalog.default_limits("extended_distance") == {"max_distance_km": 50}
        assert catalog.default_limits("unlimited_photos") == {"max_photos": 6}
        assert catalog.default_limits("read_receipts") == {}

    def test_grace_period_is_three_days(self, catalog):
        assert catalog.grace_period == timedelta(days=3)

    def test_every_feature_has_a_known_category(self, catalog):
        for definition in catalog.features():
            assert definition.category in catalog.categories

    def test_plans_reference_catalog_features(self, catalog):
        for plan in catalog.plans():
            for key in plan.features:
                assert catalog.has_feature(key)

    def test_premium_plans(self, catalog):
        monthly = catalog.get_plan("premium_monthly")
        annual = catalog.get_plan("premium_annual")

        assert monthly.duration == timedelta(days=30)
        assert annual.duration == timedelta(days=365)
        assert monthly.enables("unlimited_messages")
        assert monthly.get_feature("extended_distance").limits == {"max_distance_km": 100}

    def test_verified_badge_not_sold_in_plans(self, catalog):
        for plan in catalog.plans():
            assert not plan.enables("verified_badge")

    def test_unknown_feature_raises(self, catalog):
        with pytest.raises(UnknownFeatureError) as exc_info:
            catalog.get_feature("teleportation")
        assert exc_info.value.feature_key == "teleportation"

    def test_unknown_plan_is_none(self, catalog):
        assert catalog.get_plan("plan_gold") is None

    def test_features_by_category_covers_all_keys(self, catalog):
        grouped = catalog.features_by_category()
        flattened = [key for keys in grouped.values() for key in keys]
        assert sorted(flattened) == sorted(catalog.feature_keys())


class TestCatalogValidation:
    """Invalid catalogs are rejected at load time."""

    def test_minimal_catalog_loads(self):
        catalog = FeatureCatalog(_minimal_catalog())
        assert catalog.feature_keys() == ["unlimited_messages", "verified_badge"]

    def test_duplicate_feature_key(self):
        raw = _minimal_catalog()
        raw["features"].append({"key": "verified_badge", "category": "profile"})
        with pytest.raises(CatalogConfigError, match="duplicate"):
            FeatureCatalog(raw)

    def test_unknown_category(self):
        raw = _minimal_catalog()
        raw["features"].append({"key": "teleport", "category": "travel"})
        with pytest.raises(CatalogConfigError, match="unknown category"):
            FeatureCatalog(raw)

    def test_free_limit_outside_schema(self):
        raw = _minimal_catalog()
        raw["features"][0]["free_limits"] = {"max_photos": 6}
        with pytest.raises(CatalogConfigError, match="not declared"):
            FeatureCatalog(raw)

    def test_plan_references_unknown_feature(self):
        raw = _minimal_catalog()
        raw["plans"][0]["features"]["teleport"] = {"enabled": True}
        with pytest.raises(CatalogConfigError, match="unknown feature"):
            FeatureCatalog(raw)

    def test_plan_limit_must_be_non_negative_int(self):
        raw = _minimal_catalog()
        raw["plans"][0]["features"]["unlimited_messages"] = {
            "enabled": True,
            "limits": {"max_messages_per_day": -1},
        }
        with pytest.raises(CatalogConfigError, match="non-negative integer"):
            FeatureCatalog(raw)

    def test_plan_needs_duration(self):
        raw = _minimal_catalog()
        del raw["plans"][0]["duration_days"]
        with pytest.raises(CatalogConfigError, match="duration_days"):
            FeatureCatalog(raw)

    def test_negative_grace_period(self):
        with pytest.raises(CatalogConfigError, match="grace_period_days"):
            FeatureCatalog(_minimal_catalog(billing={"grace_period_days": -1}))

    def test_missing_file(self, temp_config_dir):
        with pytest.raises(CatalogConfigError, match="not found"):
            FeatureCatalog.from_file(temp_config_dir / "missing.yml")

    def test_invalid_yaml(self, temp_config_dir):
        path = temp_config_dir / "broken.yml"
        path.write_text("features: [unclosed\n")
        with pytest.raises(CatalogConfigError, match="Invalid YAML"):
            FeatureCatalog.from_file(path)


class TestCatalogSingleton:
    """Process-wide catalog accessor."""

    def test_get_returns_same_instance(self):
        assert get_feature_catalog() is get_feature_catalog()

    def test_reload_swaps_catalog(self, make_yaml_config, monkeypatch):
        first = get_feature_catalog()
        path = make_yaml_config("feature_catalog.yml", _minimal_catalog())
        monkeypatch.setenv("FEATURE_CATALOG_PATH", str(path))

        reloaded = reload_feature_catalog()

        assert reloaded is not first
        assert get_feature_catalog() is reloaded
        assert reloaded.feature_keys() == ["unlimited_messages", "verified_badge"]

    def test_failed_reload_keeps_previous(self, make_yaml_config, monkeypatch):
        first = get_feature_catalog()
        raw = _minimal_catalog()
        raw["features"].append({"key": "verified_badge", "category": "profile"})
        path = make_yaml_config("feature_catalog.yml", raw)
        monkeypatch.setenv("FEATURE_CATALOG_PATH", str(path))

        with pytest.raises(CatalogConfigError):
            reload_feature_catalog()

        assert get_feature_catalog() is first

    def test_reload_reaches_cached_entitlements(self, session_factory, make_yaml_config):
        resolver = EntitlementResolver(session_factory=session_factory)
        cache = EntitlementCache(resolver, ttl_seconds=300)
        set_entitlement_cache(cache)
        service = EntitlementService(cache=cache)
        assert service.get_limits("user_1", "unlimited_messages") == {"max_messages_per_day": 50}

        raw = yaml.safe_load(SHIPPED_CATALOG.read_text())
        for feature in raw["features"]:
            if feature["key"] == "unlimited_messages":
                feature["free_limits"]["max_messages_per_day"] = 10
        reload_feature_catalog(str(make_yaml_config("feature_catalog.yml", raw)))

        assert cache.stats()["entries"] == 0
        assert service.get_limits("user_1", "unlimited_messages") == {"max_messages_per_day": 10}
