"""
Tests for the entitlement snapshot cache.

Test classes:
- TestCacheBasics: Hits, misses, TTL expiry
- TestInvalidation: Staleness bound after invalidate()
- TestSingleFlight: Concurrent misses share one resolver call
- TestFailOpen: Stale snapshot or free tier when storage is down
- TestEviction: LRU bound
"""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from thirsty.entitlements.cache import EntitlementCache
from thirsty.entitlements.errors import EntitlementEvaluationError, ResolverStorageError
from thirsty.entitlements.resolver import resolve_entitlements
from thirsty.models.feature_grant import FeatureGrant
from thirsty.tests.helpers.clock import T0


class StubResolver:
    """
    Resolver double that computes from an in-memory grant list.

    The result is computed before the optional hold, so a held call returns
    the state as it was when the call started.
    """

    def __init__(self, catalog):
        self.catalog = catalog
        self.grants = []
        self.calls = 0
        self.error = None
        self.hold_first_call = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    def resolve(self, user_id):
        with self._lock:
            self.calls += 1
            call = self.calls
        result = resolve_entitlements(user_id, [], list(self.grants), self.catalog, T0)
        self.started.set()
        if call == 1 and self.hold_first_call is not None:
            self.hold_first_call.wait(5)
        if self.error is not None:
            raise self.error
        return result


def _badge_grant(user_id: str = "user_1") -> FeatureGrant:
    return FeatureGrant(user_id=user_id, feature_key="verified_badge", config={"enabled": True})


@pytest.fixture
def stub_resolver(catalog):
    return StubResolver(catalog)


@pytest.fixture
def cache(stub_resolver, clock, catalog):
    return EntitlementCache(stub_resolver, ttl_seconds=300, clock=clock, catalog=catalog)


def _run_in_thread(target):
    results = []
    thread = threading.Thread(target=lambda: results.append(target()))
    thread.start()
    return thread, results


class TestCacheBasics:
    """Hit/miss and TTL."""

    def test_second_get_is_a_hit(self, cache, stub_resolver):
        first = cache.get("user_1")
        second = cache.get("user_1")

        assert first is second
        assert stub_resolver.calls == 1
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_snapshot_expires_after_ttl(self, cache, stub_resolver, clock):
        snapshot = cache.get_snapshot("user_1")
        assert snapshot.expires_at == T0 + timedelta(seconds=300)

        clock.advance(seconds=299)
        cache.get("user_1")
        assert stub_resolver.calls == 1

        clock.advance(seconds=1)
        cache.get("user_1")
        assert stub_resolver.calls == 2

    def test_users_are_cached_independently(self, cache, stub_resolver):
        cache.get("user_1")
        cache.get("user_2")

        assert stub_resolver.calls == 2
        assert cache.stats()["entries"] == 2

    def test_cached_limits_cannot_be_mutated_by_callers(self, cache):
        limits = cache.get("user_1").get_limits("unlimited_messages")

        with pytest.raises(TypeError):
            limits["max_messages_per_day"] = 999999
        with pytest.raises(TypeError):
            cache.get("user_1").features["unlimited_messages"] = None

        assert cache.get("user_1").get_limits("unlimited_messages") == {"max_messages_per_day": 50}

    def test_grant_limit_overrides_are_read_only(self, cache, stub_resolver):
        stub_resolver.grants.append(FeatureGrant(
            user_id="user_1",
            feature_key="unlimited_photos",
            config={"enabled": True, "limits": {"max_photos": 12}},
        ))

        limits = cache.get("user_1").get_limits("unlimited_photos")

        with pytest.raises(TypeError):
            limits["max_photos"] = 100
        assert cache.get("user_1").get_specific_limit("unlimited_photos", "max_photos") == 12


class TestInvalidation:
    """After invalidate(user), the next get never returns the old snapshot."""

    def test_invalidate_forces_recompute(self, cache, stub_resolver):
        before = cache.get("user_1")
        stub_resolver.grants = [_badge_grant()]

        assert cache.invalidate("user_1", reason="grant_changed") is True
        after = cache.get("user_1")

        assert not before.has_feature("verified_badge")
        assert after.has_feature("verified_badge")
        assert stub_resolver.calls == 2

    def test_invalidate_unknown_user_is_noop(self, cache):
        assert cache.invalidate("nobody") is False

    def test_in_flight_result_is_not_stored(self, cache, stub_resolver):
        stub_resolver.hold_first_call = threading.Event()
        thread, results = _run_in_thread(lambda: cache.get("user_1"))
        assert stub_resolver.started.wait(2)

        cache.invalidate("user_1")
        stub_resolver.grants = [_badge_grant()]

        # A reader after invalidation starts its own computation
        fresh = cache.get("user_1")
        assert fresh.has_feature("verified_badge")
        assert stub_resolver.calls == 2

        stub_resolver.hold_first_call.set()
        thread.join(5)

        assert not results[0].has_feature("verified_badge")
        assert cache.peek("user_1").entitlements.has_feature("verified_badge")
        assert cache.get("user_1").has_feature("verified_badge")
        assert stub_resolver.calls == 2

    def test_invalidate_all(self, cache, stub_resolver):
        cache.get("user_1")
        cache.get("user_2")

        assert cache.invalidate_all(reason="catalog_reload") == 2
        assert cache.stats()["entries"] == 0

    def test_publisher_receives_local_invalidations(self, cache):
        publisher = MagicMock()
        cache.set_publisher(publisher)

        cache.invalidate("user_1", reason="subscription_updated")
        cache.invalidate("user_2", broadcast=False)
        cache.invalidate_all()

        assert [c.args for c in publisher.call_args_list] == [
            ("user_1", "subscription_updated"),
            ("*", "mass_invalidation"),
        ]


class TestSingleFlight:
    """Concurrent misses for one user share a resolver call."""

    def test_concurrent_misses_call_resolver_once(self, cache, stub_resolver):
        stub_resolver.hold_first_call = threading.Event()
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(cache.get("user_1")))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        assert stub_resolver.started.wait(2)
        time.sleep(0.05)

        stub_resolver.hold_first_call.set()
        for thread in threads:
            thread.join(5)

        assert stub_resolver.calls == 1
        assert len(results) == 8
        assert all(result == results[0] for result in results)

    def test_waiter_times_out(self, stub_resolver, clock, catalog):
        cache = EntitlementCache(
            stub_resolver, clock=clock, catalog=catalog, wait_timeout_seconds=0.05,
        )
        stub_resolver.hold_first_call = threading.Event()
        thread, _ = _run_in_thread(lambda: cache.get("user_1"))
        assert stub_resolver.started.wait(2)

        try:
            with pytest.raises(EntitlementEvaluationError) as exc_info:
                cache.get("user_1")
            assert exc_info.value.error_code == "ENTITLEMENT_EVAL_FAILED"
        finally:
            stub_resolver.hold_first_call.set()
            thread.join(5)

    def test_unexpected_error_propagates_to_leader(self, cache, stub_resolver):
        stub_resolver.error = RuntimeError("bug")

        with pytest.raises(RuntimeError):
            cache.get("user_1")
        assert cache.stats()["in_flight"] == 0


class TestFailOpen:
    """Storage failures never turn into errors for readers."""

    def test_expired_snapshot_served_when_storage_down(self, cache, stub_resolver, clock):
        stub_resolver.grants = [_badge_grant()]
        original = cache.get_snapshot("user_1")
        clock.advance(seconds=301)
        stub_resolver.error = ResolverStorageError("user_1", Exception("db down"))

        snapshot = cache.get_snapshot("user_1")

        assert snapshot.stale is True
        assert snapshot.entitlements == original.entitlements
        assert snapshot.entitlements.has_feature("verified_badge")
        assert cache.stats()["stale_serves"] == 1

    def test_free_tier_when_no_snapshot(self, cache, stub_resolver):
        stub_resolver.error = ResolverStorageError("user_1", Exception("db down"))

        snapshot = cache.get_snapshot("user_1")

        assert snapshot.stale is True
        assert snapshot.entitlements.is_free_tier
        assert snapshot.entitlements.get_limits("unlimited_messages") == {"max_messages_per_day": 50}
        assert cache.peek("user_1") is None
        assert cache.stats()["fallback_serves"] == 1

    def test_invalidated_snapshot_is_not_served_stale(self, cache, stub_resolver):
        stub_resolver.grants = [_badge_grant()]
        cache.get("user_1")
        cache.invalidate("user_1")
        stub_resolver.error = ResolverStorageError("user_1", Exception("db down"))

        entitlements = cache.get("user_1")

        assert not entitlements.has_feature("verified_badge")

    def test_waiters_share_fallback(self, cache, stub_resolver):
        stub_resolver.hold_first_call = threading.Event()
        stub_resolver.error = ResolverStorageError("user_1", Exception("db down"))
        thread, leader_results = _run_in_thread(lambda: cache.get_snapshot("user_1"))
        assert stub_resolver.started.wait(2)

        waiter_thread, waiter_results = _run_in_thread(lambda: cache.get_snapshot("user_1"))
        time.sleep(0.05)
        stub_resolver.hold_first_call.set()
        thread.join(5)
        waiter_thread.join(5)

        assert leader_results[0].stale is True
        assert waiter_results[0].stale is True
        assert stub_resolver.calls == 1


class TestEviction:
    """LRU safety valve."""

    def test_least_recently_used_entry_evicted(self, stub_resolver, clock, catalog):
        cache = EntitlementCache(stub_resolver, max_entries=2, clock=clock, catalog=catalog)

        cache.get("user_1")
        cache.get("user_2")
        cache.get("user_1")
        cache.get("user_3")

        assert cache.peek("user_1") is not None
        assert cache.peek("user_2") is None
        assert cache.peek("user_3") is not None
