"""
Feature grant repository.

Grant writes are administrative; callers must notify the entitlement
cache after commit (see thirsty.services.grant_service).
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from thirsty.models.feature_grant import FeatureGrant

logger = logging.getLogger(__name__)


class FeatureGrantRepository:
    """Repository for per-user feature grants."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def list_for_user(self, user_id: str) -> List[FeatureGrant]:
        return self.db.query(FeatureGrant).filter(
            FeatureGrant.user_id == user_id
        ).order_by(FeatureGrant.feature_key).all()

    def get(self, user_id: str, feature_key: str) -> Optional[FeatureGrant]:
        return self.db.query(FeatureGrant).filter(
            FeatureGrant.user_id == user_id,
            FeatureGrant.feature_key == feature_key,
        ).first()

    def upsert(
        self,
        user_id: str,
        feature_key: str,
        config: Dict[str, Any],
        granted_by: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> FeatureGrant:
        """Create or replace the grant for (user_id, feature_key)."""
        grant = self.get(user_id, feature_key)
        if grant is None:
            grant = FeatureGrant(user_id=user_id, feature_key=feature_key)
            self.db.add(grant)
        grant.config = dict(config)
        grant.granted_by = granted_by
        grant.reason = reason
        self.db.flush()
        return grant

    def delete(self, user_id: str, feature_key: str) -> bool:
        grant = self.get(user_id, feature_key)
        if grant is None:
            return False
        self.db.delete(grant)
        self.db.flush()
        return True
