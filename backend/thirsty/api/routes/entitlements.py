"""
Entitlement query API routes.

Read-only views over the entitlement cache for UI and feature-gate callers.
Handlers are plain functions so FastAPI runs them in the threadpool; a cache
miss blocks on the resolver or on another request's computation.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from thirsty.entitlements.errors import EntitlementEvaluationError, UnknownFeatureError
from thirsty.entitlements.models import ResolvedFeature
from thirsty.entitlements.service import EntitlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class FeatureResponse(BaseModel):
    """One resolved feature."""
    feature_key: str
    category: str
    granted: bool
    source: str
    limits: Union[Dict[str, int], str]


class EntitlementsResponse(BaseModel):
    """Resolved entitlements for a user."""
    user_id: str
    plan_id: Optional[str] = None
    billing_state: str
    is_premium: bool
    entitled_until: Optional[datetime] = None
    stale: bool = False
    features: Dict[str, FeatureResponse]
    features_by_category: Dict[str, List[str]]


def get_entitlement_service() -> EntitlementService:
    return EntitlementService()


def _feature_response(feature: ResolvedFeature) -> FeatureResponse:
    return FeatureResponse(**feature.to_dict())


def _evaluation_failed(exc: EntitlementEvaluationError) -> HTTPException:
    logger.error("Entitlement evaluation failed", extra={
        "user_id": exc.user_id, "error": exc.detail,
    })
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=exc.to_dict(),
    )


@router.get("/{user_id}", response_model=EntitlementsResponse)
def get_entitlements(
    user_id: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Get all resolved features and limits for a user."""
    try:
        snapshot = service.get_snapshot(user_id)
    except EntitlementEvaluationError as exc:
        raise _evaluation_failed(exc)

    entitlements = snapshot.entitlements
    return EntitlementsResponse(
        user_id=user_id,
        plan_id=entitlements.plan_id,
        billing_state=entitlements.billing_state.value,
        is_premium=entitlements.is_premium,
        entitled_until=entitlements.entitled_until,
        stale=snapshot.stale,
        features={
            key: _feature_response(feature)
            for key, feature in entitlements.features.items()
        },
        features_by_category=entitlements.features_by_category(),
    )


@router.get("/{user_id}/features/{feature_key}", response_model=FeatureResponse)
def get_feature(
    user_id: str,
    feature_key: str,
    service: EntitlementService = Depends(get_entitlement_service),
):
    """Check one feature for a user. Unknown keys return 404."""
    try:
        entitlements = service.get_all(user_id)
        feature = entitlements.get_feature(feature_key)
    except UnknownFeatureError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown feature: {feature_key}"
        )
    except EntitlementEvaluationError as exc:
        raise _evaluation_failed(exc)

    return _feature_response(feature)
