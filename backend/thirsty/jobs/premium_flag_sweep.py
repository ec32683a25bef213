"""
Premium flag sweep job.

profile_premium_flags is a denormalized copy of "is this user entitled to
premium", written by the synchronizer whenever the ledger changes. Expiry
needs no ledger write, so a flag whose premium_expires_at has passed keeps
reading true until this job recomputes it from the resolver.

Each flag is recomputed with the user's ledger rows and flag row locked,
so a purchase committed after the flag was listed is never overwritten.

Usage:
    python -m thirsty.jobs.premium_flag_sweep

Configuration:
- PREMIUM_SWEEP_BATCH_SIZE: Flags recomputed per transaction (default: 500)
- PREMIUM_SWEEP_MAX_BATCHES: Safety cap per run (default: 100)
"""

import os
import sys
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from thirsty.config.settings import get_settings
from thirsty.database.session import job_session
from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache
from thirsty.entitlements.invalidation import RedisInvalidationBus
from thirsty.entitlements.resolver import EntitlementResolver
from thirsty.models.base import utcnow
from thirsty.models.premium_flag import ProfilePremiumFlag
from thirsty.repositories.premium_flag_repository import PremiumFlagRepository
from thirsty.repositories.subscription_repository import SubscriptionRepository

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

PREMIUM_SWEEP_BATCH_SIZE = int(os.getenv("PREMIUM_SWEEP_BATCH_SIZE", "500"))
PREMIUM_SWEEP_MAX_BATCHES = int(os.getenv("PREMIUM_SWEEP_MAX_BATCHES", "100"))


def _is_lapsed(flag: Optional[ProfilePremiumFlag], now: datetime) -> bool:
    return (
        flag is not None
        and flag.is_premium
        and flag.premium_expires_at is not None
        and flag.premium_expires_at <= now
    )


class SweepStats:
    """Track sweep run statistics."""

    def __init__(self):
        self.flags_checked = 0
        self.flags_cleared = 0
        self.flags_extended = 0
        self.flags_skipped = 0
        self.batches = 0
        self.start_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "flags_checked": self.flags_checked,
            "flags_cleared": self.flags_cleared,
            "flags_extended": self.flags_extended,
            "flags_skipped": self.flags_skipped,
            "batches": self.batches,
            "duration_seconds": duration
        }


class PremiumFlagSweep:
    """Recomputes lapsed premium flags from the ledger."""

    def __init__(
        self,
        db_session: Session,
        resolver: Optional[EntitlementResolver] = None,
        cache: Optional[EntitlementCache] = None,
        batch_size: int = PREMIUM_SWEEP_BATCH_SIZE,
        max_batches: int = PREMIUM_SWEEP_MAX_BATCHES,
        clock=None,
    ):
        self.db = db_session
        self._clock = clock or utcnow
        self._resolver = resolver or EntitlementResolver(clock=self._clock)
        self._cache = cache
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.stats = SweepStats()

    def _sweep_batch(self, now: datetime) -> Tuple[int, List[str]]:
        flags = PremiumFlagRepository(self.db)
        subscriptions = SubscriptionRepository(self.db)
        lapsed = flags.list_lapsed(now, limit=self.batch_size)
        changed = []
        for candidate in lapsed:
            user_id = candidate.user_id
            # Same lock order as the synchronizer: ledger rows, then the flag
            subscriptions.list_for_user(user_id, for_update=True)
            flag = flags.get(user_id, for_update=True)
            if not _is_lapsed(flag, now):
                # A ledger write refreshed the flag after it was listed
                self.stats.flags_skipped += 1
                continue

            entitlements = self._resolver.resolve_in_session(self.db, user_id, now=now)
            flags.set(
                user_id,
                is_premium=entitlements.is_premium,
                premium_expires_at=entitlements.entitled_until,
                now=now,
            )
            if entitlements.is_premium:
                self.stats.flags_extended += 1
            else:
                self.stats.flags_cleared += 1
            changed.append(user_id)
        self.db.commit()
        self.stats.flags_checked += len(lapsed)
        return len(lapsed), changed

    def run(self) -> dict:
        """
        Sweep until no lapsed flags remain or the batch cap is hit.

        Returns:
            Statistics dictionary
        """
        now = self._clock()
        logger.info("Starting premium flag sweep", extra={"now": now.isoformat()})

        while self.stats.batches < self.max_batches:
            listed, changed = self._sweep_batch(now)
            self.stats.batches += 1
            if self._cache is not None:
                for user_id in changed:
                    self._cache.invalidate(user_id, reason="premium_expired")
            if listed < self.batch_size:
                break
        else:
            logger.warning("Premium flag sweep hit batch cap", extra={
                "max_batches": self.max_batches,
            })

        stats = self.stats.to_dict()
        logger.info("Premium flag sweep completed", extra=stats)
        return stats


def main():
    """Main entry point for the premium flag sweep."""
    logger.info("Premium flag sweep starting")
    settings = get_settings()

    # Broadcast invalidations to API processes when Redis is configured
    cache = None
    if settings.redis_url:
        cache = get_entitlement_cache()
        RedisInvalidationBus.from_url(settings.redis_url, cache).attach()

    try:
        with job_session() as session:
            PremiumFlagSweep(session, cache=cache).run()
    except Exception as e:
        logger.error("Premium flag sweep failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Premium flag sweep finished")


if __name__ == "__main__":
    main()
