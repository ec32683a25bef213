"""
Tests for the entitlement query service.
"""

from datetime import timedelta

import pytest

from thirsty.entitlements.errors import UnknownFeatureError
from thirsty.entitlements.models import UNLIMITED
from thirsty.entitlements.service import EntitlementService
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus
from thirsty.tests.helpers.clock import T0


def seed_active(session_factory, user_id="user_1", plan_id="premium_monthly"):
    with session_factory() as session:
        session.add(SubscriptionRecord(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE.value,
            external_subscription_id=f"sub_{user_id}",
            start_at=T0,
            end_at=T0 + timedelta(days=30),
            auto_renew=True,
            last_event_at=T0,
        ))
        session.commit()


@pytest.fixture
def service(entitlement_cache, catalog):
    return EntitlementService(cache=entitlement_cache, catalog=catalog)


class TestFreeUser:

    def test_free_tier_defaults(self, service):
        assert service.is_free_tier("user_1")
        assert not service.has_feature("user_1", "unlimited_messages")
        assert service.get_limits("user_1", "unlimited_photos") == {"max_photos": 6}
        assert service.get_specific_limit("user_1", "extended_distance", "max_distance_km") == 50
        assert service.features_by_category("user_1") == {}

    def test_unknown_feature_key_raises(self, service):
        with pytest.raises(UnknownFeatureError):
            service.has_feature("user_1", "teleportation")
        with pytest.raises(UnknownFeatureError):
            service.get_limits("user_1", "teleportation")
        with pytest.raises(UnknownFeatureError):
            service.has_any_feature("user_1", ["read_receipts", "teleportation"])


class TestPremiumUser:

    def test_plan_features_and_limits(self, service, session_factory):
        seed_active(session_factory)

        assert not service.is_free_tier("user_1")
        assert service.has_feature("user_1", "read_receipts")
        assert service.get_limits("user_1", "unlimited_messages") is UNLIMITED
        assert service.get_specific_limit("user_1", "unlimited_messages", "max_messages_per_day") is None
        assert service.get_specific_limit("user_1", "extended_distance", "max_distance_km") == 100

    def test_any_and_all(self, service, session_factory):
        seed_active(session_factory)

        assert service.has_any_feature("user_1", ["verified_badge", "read_receipts"])
        assert not service.has_all_features("user_1", ["verified_badge", "read_receipts"])
        assert service.has_all_features("user_1", ["read_receipts", "ad_free"])

    def test_features_by_category(self, service, session_factory):
        seed_active(session_factory)

        grouped = service.features_by_category("user_1")

        assert "unlimited_messages" in grouped["messaging"]
        assert "verified_badge" not in grouped.get("profile", [])

    def test_prefetch_warms_cache(self, service, session_factory, entitlement_cache):
        seed_active(session_factory, "user_1")

        assert service.prefetch(["user_1", "user_2", "user_3"]) == 3
        assert entitlement_cache.stats()["entries"] == 3
        assert entitlement_cache.peek("user_1").entitlements.is_premium
