"""
Dedup ledger repository for consumed provider webhooks.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from thirsty.models.webhook_event import ProcessedWebhookEvent, WebhookOutcome

logger = logging.getLogger(__name__)


def payload_hash(payload: Dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON payload, kept for debugging."""
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_str.encode()).hexdigest()


class WebhookEventRepository:
    """Repository for the webhook dedup ledger."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def is_processed(self, provider_event_id: str) -> bool:
        """
        Check if a webhook event has already been consumed.

        Args:
            provider_event_id: Provider event id

        Returns:
            True if duplicate, False otherwise
        """
        existing = self.db.query(ProcessedWebhookEvent.id).filter(
            ProcessedWebhookEvent.provider_event_id == provider_event_id
        ).first()
        return existing is not None

    def record(
        self,
        provider_event_id: str,
        event_type: str,
        occurred_at: datetime,
        payload: Dict[str, Any],
        outcome: str = WebhookOutcome.APPLIED,
        user_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
        ledger_action: Optional[str] = None,
        period_end: Optional[datetime] = None,
        invoice_id: Optional[str] = None,
    ) -> ProcessedWebhookEvent:
        """
        Record a consumed event. Flushes so a concurrent duplicate
        surfaces as IntegrityError inside the caller's transaction.
        """
        event = ProcessedWebhookEvent(
            provider_event_id=provider_event_id,
            event_type=event_type,
            occurred_at=occurred_at,
            user_id=user_id,
            external_subscription_id=external_subscription_id,
            outcome=outcome,
            ledger_action=ledger_action,
            period_end=period_end,
            invoice_id=invoice_id,
            payload_hash=payload_hash(payload),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def list_orphans(self, external_subscription_id: str) -> List[ProcessedWebhookEvent]:
        """Orphaned events for a subscription id, oldest first."""
        return self.db.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.external_subscription_id == external_subscription_id,
            ProcessedWebhookEvent.outcome == WebhookOutcome.ORPHANED,
        ).order_by(
            ProcessedWebhookEvent.occurred_at,
            ProcessedWebhookEvent.provider_event_id,
        ).all()

    def purge_older_than(self, cutoff: datetime, batch_size: int = 1000) -> int:
        """
        Delete one batch of events processed before cutoff.

        Returns:
            Number of rows deleted (0 when nothing is left)
        """
        ids = [
            row.id for row in self.db.query(ProcessedWebhookEvent.id).filter(
                ProcessedWebhookEvent.processed_at < cutoff
            ).limit(batch_size).all()
        ]
        if not ids:
            return 0
        deleted = self.db.query(ProcessedWebhookEvent).filter(
            ProcessedWebhookEvent.id.in_(ids)
        ).delete(synchronize_session=False)
        return deleted
