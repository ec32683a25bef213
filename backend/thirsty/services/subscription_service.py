"""
Subscription service for the purchase flow collaborator.

The payment collaborator calls start_purchase() when it creates a payment
intent. The record stays pending until the synchronizer applies the
matching payment_intent.succeeded webhook.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from thirsty.entitlements.catalog import FeatureCatalog, get_feature_catalog
from thirsty.models.billing_event import ActorType, BillingEvent, BillingEventType
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus
from thirsty.repositories.subscription_repository import SubscriptionRepository
from thirsty.services.billing_errors import UnknownPlanError

logger = logging.getLogger(__name__)


class SubscriptionService:
    """User-initiated subscription operations. Never changes status."""

    def __init__(self, db_session: Session, catalog: Optional[FeatureCatalog] = None):
        self.db = db_session
        self._catalog = catalog or get_feature_catalog()
        self._subscriptions = SubscriptionRepository(db_session)

    def start_purchase(
        self,
        user_id: str,
        plan_id: str,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Create the pending ledger record for a new purchase.

        Idempotent per external_subscription_id: calling again with the
        same provider id returns the existing record.

        Raises:
            UnknownPlanError: If plan_id is not in the catalog
            ValueError: If external_subscription_id belongs to another user
        """
        if self._catalog.get_plan(plan_id) is None:
            raise UnknownPlanError(plan_id)

        if external_subscription_id:
            existing = self._subscriptions.get_by_external_id(external_subscription_id)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ValueError(
                        f"{external_subscription_id} is already attached to another user"
                    )
                return existing

        record = self._subscriptions.create(
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.PENDING,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
        )
        self.db.add(BillingEvent(
            user_id=user_id,
            event_type=BillingEventType.SUBSCRIPTION_CREATED,
            actor_type=ActorType.USER,
            subscription_id=record.id,
            external_subscription_id=external_subscription_id,
            to_status=SubscriptionStatus.PENDING.value,
            extra_metadata={"plan_id": plan_id},
        ))
        self.db.commit()

        logger.info("Purchase started", extra={
            "user_id": user_id,
            "plan_id": plan_id,
            "subscription_id": record.id,
        })
        return record

    def get_current_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        """Active or past-due record for the user, if any."""
        return self._subscriptions.get_current_for_user(user_id)
