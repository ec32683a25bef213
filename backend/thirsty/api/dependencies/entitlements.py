"""
Entitlement check dependencies.

Provides reusable FastAPI dependencies for gating routes on a feature.
Routes that use them must take the user id as a `user_id` path parameter.
"""

import logging
from typing import Callable

from fastapi import Depends, HTTPException, status

from thirsty.entitlements.catalog import get_feature_catalog
from thirsty.entitlements.errors import EntitlementDeniedError, EntitlementEvaluationError
from thirsty.entitlements.models import EntitlementSet
from thirsty.entitlements.service import EntitlementService

logger = logging.getLogger(__name__)


def get_entitlement_service() -> EntitlementService:
    return EntitlementService()


def create_entitlement_check(feature_key: str) -> Callable:
    """
    Factory function to create an entitlement check dependency.

    Args:
        feature_key: Catalog feature key to require

    Returns:
        A FastAPI dependency that returns the user's EntitlementSet when
        the feature is granted

    Raises:
        UnknownFeatureError: At import time, if feature_key is not in the catalog
    """
    get_feature_catalog().get_feature(feature_key)

    def check_entitlement(
        user_id: str,
        service: EntitlementService = Depends(get_entitlement_service),
    ) -> EntitlementSet:
        """
        Dependency to check feature entitlement.

        Raises 402 Payment Required if the user is not entitled.
        """
        try:
            entitlements = service.get_all(user_id)
        except EntitlementEvaluationError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=exc.to_dict(),
            )

        if not entitlements.has_feature(feature_key):
            denied = EntitlementDeniedError(
                feature=feature_key,
                billing_state=entitlements.billing_state.value,
                plan_id=entitlements.plan_id,
            )
            logger.warning("Feature access denied - not entitled", extra={
                "user_id": user_id,
                "feature": feature_key,
                "billing_state": denied.billing_state,
            })
            raise HTTPException(status_code=denied.http_status, detail=denied.to_dict())

        return entitlements

    return check_entitlement


def require_feature(feature_key: str) -> Callable:
    """Shorthand: `Depends(require_feature("unlimited_messages"))`."""
    return create_entitlement_check(feature_key)
