"""
Entitlement Cache - in-process snapshot cache with single-flight and invalidation.

Provides:
- EntitlementCache: TTL + LRU cache of EntitlementSnapshot per user
- get_entitlement_cache(): process singleton wired to the resolver and,
  when REDIS_URL is set, to cross-process invalidation

Guarantees:
- Concurrent misses for one user share a single resolver call.
- invalidate() bumps the entry: a computation already in flight is never
  stored and later readers never join it.
- Fail open on read: a storage failure serves the last snapshot even past
  TTL, or catalog free-tier defaults when there is none.

CRITICAL: Ledger and grant writers MUST call invalidate() after commit.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Optional

from thirsty.config.settings import get_settings
from thirsty.entitlements.catalog import FeatureCatalog
from thirsty.entitlements.errors import EntitlementEvaluationError, ResolverStorageError
from thirsty.entitlements.models import EntitlementSet, EntitlementSnapshot
from thirsty.entitlements.resolver import EntitlementResolver, free_tier_entitlements
from thirsty.models.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes
DEFAULT_MAX_ENTRIES = 10000
DEFAULT_WAIT_TIMEOUT_SECONDS = 5.0


class _Flight:
    """One in-progress resolver call shared by every waiter for a key."""

    __slots__ = ("done", "result", "error", "invalidated")

    def __init__(self):
        self.done = threading.Event()
        self.result: Optional[EntitlementSnapshot] = None
        self.error: Optional[BaseException] = None
        self.invalidated = False


class EntitlementCache:
    """
    Caching layer for user entitlements.

    Usage:
        cache = get_entitlement_cache()
        entitlements = cache.get(user_id)

        # After a ledger or grant commit
        cache.invalidate(user_id, reason="subscription_updated")
    """

    def __init__(
        self,
        resolver: EntitlementResolver,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        wait_timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
        catalog: Optional[FeatureCatalog] = None,
    ):
        self._resolver = resolver
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max(1, max_entries)
        self._wait_timeout = wait_timeout_seconds
        self._clock = clock or utcnow
        self._catalog = catalog

        self._entries: "OrderedDict[str, EntitlementSnapshot]" = OrderedDict()
        self._flights: Dict[str, _Flight] = {}
        self._lock = Lock()

        self._publisher: Optional[Callable[[str, Optional[str]], None]] = None

        self._hits = 0
        self._misses = 0
        self._stale_serves = 0
        self._fallback_serves = 0

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def set_publisher(self, publisher: Optional[Callable[[str, Optional[str]], None]]) -> None:
        """
        Register a callback that broadcasts local invalidations.

        The callback receives (user_id, reason); user_id "*" means all.
        """
        self._publisher = publisher

    @property
    def ttl_seconds(self) -> float:
        return self._ttl.total_seconds()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> EntitlementSet:
        """Entitlements for a user, computed on miss or expiry."""
        return self.get_snapshot(user_id).entitlements

    def peek(self, user_id: str) -> Optional[EntitlementSnapshot]:
        """Stored snapshot, live or not, without computing."""
        with self._lock:
            return self._entries.get(user_id)

    def get_snapshot(self, user_id: str) -> EntitlementSnapshot:
        now = self._clock()
        with self._lock:
            snapshot = self._entries.get(user_id)
            if snapshot is not None and snapshot.is_live(now):
                self._entries.move_to_end(user_id)
                self._hits += 1
                return snapshot

            self._misses += 1
            flight = self._flights.get(user_id)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[user_id] = flight

        if leader:
            return self._compute(user_id, flight)
        return self._wait(user_id, flight)

    def _compute(self, user_id: str, flight: _Flight) -> EntitlementSnapshot:
        try:
            entitlements = self._resolver.resolve(user_id)
        except ResolverStorageError as exc:
            self._finish(user_id, flight, error=exc)
            return self._serve_fallback(user_id, exc)
        except BaseException as exc:
            self._finish(user_id, flight, error=exc)
            raise

        computed_at = self._clock()
        snapshot = EntitlementSnapshot(
            user_id=user_id,
            entitlements=entitlements,
            computed_at=computed_at,
            expires_at=computed_at + self._ttl,
        )
        self._finish(user_id, flight, result=snapshot)
        return snapshot

    def _finish(
        self,
        user_id: str,
        flight: _Flight,
        result: Optional[EntitlementSnapshot] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        with self._lock:
            if result is not None:
                if flight.invalidated:
                    logger.debug("Discarding entitlements computed before invalidation", extra={
                        "user_id": user_id,
                    })
                else:
                    self._store(user_id, result)
            if self._flights.get(user_id) is flight:
                del self._flights[user_id]
        flight.result = result
        flight.error = error
        flight.done.set()

    def _wait(self, user_id: str, flight: _Flight) -> EntitlementSnapshot:
        if not flight.done.wait(self._wait_timeout):
            raise EntitlementEvaluationError(
                user_id, "Timed out waiting for entitlement computation"
            )
        if isinstance(flight.error, ResolverStorageError):
            return self._serve_fallback(user_id, flight.error)
        if flight.error is not None:
            raise EntitlementEvaluationError(
                user_id,
                "Internal error during entitlement evaluation",
                cause=flight.error,
            )
        return flight.result

    def _serve_fallback(self, user_id: str, exc: ResolverStorageError) -> EntitlementSnapshot:
        with self._lock:
            snapshot = self._entries.get(user_id)
            if snapshot is not None:
                self._stale_serves += 1
            else:
                self._fallback_serves += 1

        if snapshot is not None:
            logger.error("Entitlement storage unavailable - serving stale snapshot", extra={
                "user_id": user_id,
                "computed_at": snapshot.computed_at.isoformat(),
                "error": str(exc.cause or exc),
            })
            return replace(snapshot, stale=True)

        logger.error("Entitlement storage unavailable - serving free tier defaults", extra={
            "user_id": user_id,
            "error": str(exc.cause or exc),
        })
        catalog = self._catalog or self._resolver.catalog
        now = self._clock()
        return EntitlementSnapshot(
            user_id=user_id,
            entitlements=free_tier_entitlements(user_id, catalog),
            computed_at=now,
            expires_at=now,
            stale=True,
        )

    def _store(self, user_id: str, snapshot: EntitlementSnapshot) -> None:
        # Caller holds self._lock
        self._entries[user_id] = snapshot
        self._entries.move_to_end(user_id)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted least recently used entitlements", extra={"user_id": evicted})

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(
        self,
        user_id: str,
        reason: Optional[str] = None,
        broadcast: bool = True,
    ) -> bool:
        """
        Drop the cached entitlements for a user.

        CRITICAL: Must be called after every committed ledger or grant change.

        Args:
            user_id: User whose entry is dropped
            reason: Optional reason for logging and broadcast
            broadcast: Publish to other processes (False for remote invalidations)

        Returns:
            True if a snapshot or in-flight computation was dropped
        """
        with self._lock:
            removed = self._entries.pop(user_id, None) is not None
            flight = self._flights.pop(user_id, None)
            if flight is not None:
                flight.invalidated = True

        if broadcast and self._publisher is not None:
            self._publisher(user_id, reason)

        dropped = removed or flight is not None
        if dropped:
            logger.info("Invalidated entitlement cache", extra={
                "user_id": user_id, "reason": reason,
            })
        return dropped

    def invalidate_all(self, reason: Optional[str] = None, broadcast: bool = True) -> int:
        """
        Invalidate all cached entitlements.

        Use with caution - only for catalog reloads or emergencies.

        Returns:
            Number of snapshots dropped
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            for flight in self._flights.values():
                flight.invalidated = True
            self._flights.clear()

        if broadcast and self._publisher is not None:
            self._publisher("*", reason or "mass_invalidation")

        logger.warning("Mass invalidation of entitlement cache", extra={
            "count": count, "reason": reason,
        })
        return count

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._entries),
                "in_flight": len(self._flights),
                "hits": self._hits,
                "misses": self._misses,
                "stale_serves": self._stale_serves,
                "fallback_serves": self._fallback_serves,
            }


# Module-level singleton
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """Get the singleton EntitlementCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                settings = get_settings()
                _cache_instance = EntitlementCache(
                    resolver=EntitlementResolver(),
                    ttl_seconds=settings.entitlement_cache_ttl_seconds,
                    max_entries=settings.entitlement_cache_max_entries,
                    wait_timeout_seconds=settings.single_flight_timeout_seconds,
                )
    return _cache_instance


def set_entitlement_cache(cache: Optional[EntitlementCache]) -> None:
    """Replace the singleton (app wiring and tests)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = cache
