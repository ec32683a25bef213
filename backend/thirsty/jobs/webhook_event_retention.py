"""
Webhook Event Retention Job.

Deletes dedup ledger rows (webhook_events) older than the retention window.
Stripe stops redelivering an event after a few days, so rows past the
window can no longer prevent a duplicate apply.

Run as a daily cron job:
    python -m thirsty.jobs.webhook_event_retention

Configuration:
- WEBHOOK_DEDUP_RETENTION_DAYS: Retention period in days (default: 30)
- WEBHOOK_RETENTION_BATCH_SIZE: Records to delete per batch (default: 1000)
"""

import os
import sys
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from thirsty.config.settings import get_settings
from thirsty.database.session import job_session
from thirsty.models.base import utcnow
from thirsty.repositories.webhook_event_repository import WebhookEventRepository

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Configuration
WEBHOOK_RETENTION_BATCH_SIZE = int(os.getenv("WEBHOOK_RETENTION_BATCH_SIZE", "1000"))


class WebhookEventRetention:
    """Enforces the dedup ledger retention window."""

    def __init__(
        self,
        db_session: Session,
        retention_days: Optional[int] = None,
        batch_size: int = WEBHOOK_RETENTION_BATCH_SIZE,
        now: Optional[datetime] = None,
    ):
        """
        Initialize retention job.

        Args:
            db_session: Database session
            retention_days: Days to retain consumed events
            batch_size: Rows deleted per transaction
            now: Reference time (defaults to current UTC time)
        """
        self.db = db_session
        self.retention_days = (
            get_settings().webhook_dedup_retention_days
            if retention_days is None else retention_days
        )
        self.batch_size = batch_size
        self.cutoff_date = (now or utcnow()) - timedelta(days=self.retention_days)
        self.stats = {
            "webhook_events_deleted": 0,
            "batches": 0,
        }

    def run(self) -> Dict:
        """
        Delete expired rows in batches to avoid long-running transactions.

        Returns:
            Statistics dictionary
        """
        logger.info(
            "Starting webhook event retention",
            extra={
                "retention_days": self.retention_days,
                "cutoff_date": self.cutoff_date.isoformat(),
            },
        )
        repository = WebhookEventRepository(self.db)

        while True:
            deleted = repository.purge_older_than(self.cutoff_date, self.batch_size)
            self.db.commit()
            if deleted:
                self.stats["batches"] += 1
                self.stats["webhook_events_deleted"] += deleted
                logger.info(
                    f"Deleted {deleted} webhook_events records (batch)",
                    extra={"total_deleted": self.stats["webhook_events_deleted"]},
                )
            # If we deleted less than batch size, we're done
            if deleted < self.batch_size:
                break

        self.stats["cutoff_date"] = self.cutoff_date.isoformat()
        logger.info("Webhook event retention completed", extra=self.stats)
        return self.stats


def main():
    """Main entry point for the webhook event retention job."""
    logger.info("Webhook event retention starting")

    try:
        with job_session() as session:
            WebhookEventRetention(session).run()
    except Exception as e:
        logger.error("Webhook event retention failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)

    logger.info("Webhook event retention finished")


if __name__ == "__main__":
    main()
