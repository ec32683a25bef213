"""
Tests for administrative feature grants.
"""

import pytest

from thirsty.entitlements.errors import UnknownFeatureError
from thirsty.entitlements.models import UNLIMITED, FeatureSource
from thirsty.models.billing_event import ActorType, BillingEvent, BillingEventType
from thirsty.services.grant_service import GrantService


@pytest.fixture
def grant_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def grant_service(grant_session, entitlement_cache, catalog):
    return GrantService(grant_session, cache=entitlement_cache, catalog=catalog)


class TestGrantFeature:

    def test_grant_is_visible_immediately(self, grant_service, entitlement_cache):
        assert not entitlement_cache.get("user_1").has_feature("verified_badge")

        grant_service.grant_feature("user_1", "verified_badge", granted_by="admin_1")

        feature = entitlement_cache.get("user_1").get_feature("verified_badge")
        assert feature.granted
        assert feature.source == FeatureSource.GRANT
        assert feature.limits is UNLIMITED

    def test_grant_with_limits(self, grant_service, entitlement_cache):
        grant_service.grant_feature("user_1", "unlimited_photos", limits={"max_photos": 12})

        assert entitlement_cache.get("user_1").get_limits("unlimited_photos") == {"max_photos": 12}

    def test_regrant_replaces_config(self, grant_service, entitlement_cache):
        grant_service.grant_feature("user_1", "unlimited_photos", limits={"max_photos": 12})
        grant_service.grant_feature("user_1", "unlimited_photos", limits={"max_photos": 20})

        assert entitlement_cache.get("user_1").get_limits("unlimited_photos") == {"max_photos": 20}

    def test_disabled_grant_is_ignored(self, grant_service, entitlement_cache):
        grant_service.grant_feature("user_1", "verified_badge", enabled=False)

        assert not entitlement_cache.get("user_1").has_feature("verified_badge")

    def test_audit_event_written(self, grant_service, grant_session):
        grant_service.grant_feature("user_1", "verified_badge", granted_by="admin_1", reason="press")

        event = grant_session.query(BillingEvent).filter_by(
            event_type=BillingEventType.GRANT_CHANGED
        ).one()
        assert event.actor_type == ActorType.ADMIN
        assert event.extra_metadata["action"] == "granted"
        assert event.extra_metadata["granted_by"] == "admin_1"

    def test_unknown_feature(self, grant_service):
        with pytest.raises(UnknownFeatureError):
            grant_service.grant_feature("user_1", "teleportation")

    def test_unknown_limit_name(self, grant_service):
        with pytest.raises(ValueError, match="max_distance_km"):
            grant_service.grant_feature("user_1", "unlimited_photos", limits={"max_distance_km": 10})


class TestRevokeGrant:

    def test_revoke_removes_feature(self, grant_service, entitlement_cache):
        grant_service.grant_feature("user_1", "verified_badge")
        assert entitlement_cache.get("user_1").has_feature("verified_badge")

        assert grant_service.revoke_grant("user_1", "verified_badge", revoked_by="admin_1") is True

        assert not entitlement_cache.get("user_1").has_feature("verified_badge")

    def test_revoke_missing_grant(self, grant_service):
        assert grant_service.revoke_grant("user_1", "verified_badge") is False
