"""
Subscription ledger repository for data access operations.

Encapsulates all database operations for subscription records with:
- Lookups keyed by user_id and external_subscription_id
- Optional row locking (SELECT ... FOR UPDATE) for the synchronizer
- Consistent ordering so callers see deterministic results
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription ledger access.

    Row locks only take effect on backends that support them
    (PostgreSQL); SQLite ignores FOR UPDATE and relies on the
    synchronizer's in-process keyed locks.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def get_by_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.id == subscription_id
        ).first()

    def get_by_external_id(
        self,
        external_subscription_id: str,
        for_update: bool = False,
    ) -> Optional[SubscriptionRecord]:
        """
        Get a record by provider subscription id.

        Args:
            external_subscription_id: Provider id (sub_..., pi_...)
            for_update: Lock the row for the rest of the transaction

        Returns:
            SubscriptionRecord if found, None otherwise
        """
        query = self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.external_subscription_id == external_subscription_id
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def list_for_user(self, user_id: str, for_update: bool = False) -> List[SubscriptionRecord]:
        """All ledger rows for a user, oldest first."""
        query = self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id
        ).order_by(SubscriptionRecord.created_at, SubscriptionRecord.id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.all()

    def get_current_for_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        """
        Get the user's current active or past-due record.

        Returns the record with the latest end_at when more than one
        matches, which only happens transiently during supersession.
        """
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.status.in_([
                SubscriptionStatus.ACTIVE.value,
                SubscriptionStatus.PAST_DUE.value,
            ])
        ).order_by(
            SubscriptionRecord.end_at.desc(),
            SubscriptionRecord.id,
        ).first()

    def get_pending_for_user(self, user_id: str, plan_id: str) -> Optional[SubscriptionRecord]:
        """Most recent pending record for a user and plan without a provider id."""
        return self.db.query(SubscriptionRecord).filter(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.plan_id == plan_id,
            SubscriptionRecord.status == SubscriptionStatus.PENDING.value,
            SubscriptionRecord.external_subscription_id.is_(None),
        ).order_by(SubscriptionRecord.created_at.desc()).first()

    def create(
        self,
        user_id: str,
        plan_id: str,
        status: SubscriptionStatus = SubscriptionStatus.PENDING,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        auto_renew: bool = False,
    ) -> SubscriptionRecord:
        """Add a new ledger row to the session (caller commits)."""
        record = SubscriptionRecord(
            user_id=user_id,
            plan_id=plan_id,
            status=status.value,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            start_at=start_at,
            end_at=end_at,
            auto_renew=auto_renew,
        )
        self.db.add(record)
        self.db.flush()
        logger.info("Subscription record created", extra={
            "subscription_id": record.id,
            "user_id": user_id,
            "plan_id": plan_id,
            "status": status.value,
        })
        return record
