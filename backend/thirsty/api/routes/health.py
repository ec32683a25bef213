"""Health check route (no authentication)."""

from fastapi import APIRouter
from pydantic import BaseModel

from thirsty.entitlements.cache import get_entitlement_cache

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str = "ok"
    cache_entries: int


@router.get("/health", response_model=HealthResponse)
def health_check():
    return HealthResponse(cache_entries=get_entitlement_cache().stats()["entries"])
