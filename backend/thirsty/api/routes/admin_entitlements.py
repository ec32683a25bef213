"""
Admin entitlement routes.

SECURITY: Requires the X-Admin-Token header to match ADMIN_API_TOKEN.
The admin grant tool calls this after writing grants directly so the
affected user's cached entitlements are dropped.
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from thirsty.config.settings import get_settings
from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/entitlements", tags=["admin-entitlements"])


class InvalidateRequest(BaseModel):
    """Optional context for an invalidation."""
    reason: Optional[str] = Field(None, description="Why the entry is dropped", max_length=255)


class InvalidateResponse(BaseModel):
    user_id: str
    invalidated: bool


def require_admin_token(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
) -> None:
    """Dependency that rejects callers without the shared admin token."""
    expected = get_settings().admin_api_token
    if not expected:
        logger.error("ADMIN_API_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API not configured"
        )
    # compare_digest only accepts ASCII str; header values may carry any byte
    if not x_admin_token or not hmac.compare_digest(
        x_admin_token.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning("Admin request with invalid token")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )


def get_cache() -> EntitlementCache:
    return get_entitlement_cache()


@router.post(
    "/{user_id}/invalidate",
    response_model=InvalidateResponse,
    dependencies=[Depends(require_admin_token)],
)
def invalidate_user(
    user_id: str,
    body: Optional[InvalidateRequest] = None,
    cache: EntitlementCache = Depends(get_cache),
):
    """Drop a user's cached entitlements after an out-of-band grant change."""
    reason = (body.reason if body else None) or "admin_grant_changed"
    invalidated = cache.invalidate(user_id, reason=reason)
    logger.info("Admin invalidated entitlements", extra={
        "user_id": user_id, "reason": reason, "invalidated": invalidated,
    })
    return InvalidateResponse(user_id=user_id, invalidated=invalidated)
