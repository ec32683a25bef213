"""
Grant service for administrative feature overrides.

Writes FeatureGrant rows, appends a GRANT_CHANGED audit event and
invalidates the user's cached entitlements after commit.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache
from thirsty.entitlements.catalog import FeatureCatalog, get_feature_catalog
from thirsty.models.billing_event import ActorType, BillingEvent, BillingEventType
from thirsty.models.feature_grant import FeatureGrant
from thirsty.repositories.feature_grant_repository import FeatureGrantRepository

logger = logging.getLogger(__name__)


class GrantService:
    """Service for granting and revoking per-user feature overrides."""

    def __init__(
        self,
        db_session: Session,
        cache: Optional[EntitlementCache] = None,
        catalog: Optional[FeatureCatalog] = None,
    ):
        """
        Initialize grant service.

        Args:
            db_session: Database session (committed by this service)
            cache: Entitlement cache to invalidate after writes
            catalog: Feature catalog used to validate keys and limits
        """
        self.db = db_session
        self._cache = cache or get_entitlement_cache()
        self._catalog = catalog or get_feature_catalog()
        self._grants = FeatureGrantRepository(db_session)

    def _log_billing_event(
        self,
        user_id: str,
        actor_type: str,
        metadata: Dict[str, Any],
    ) -> BillingEvent:
        """Log a billing event (append-only audit log)."""
        event = BillingEvent(
            user_id=user_id,
            event_type=BillingEventType.GRANT_CHANGED,
            actor_type=actor_type,
            extra_metadata=metadata,
        )
        self.db.add(event)
        return event

    def grant_feature(
        self,
        user_id: str,
        feature_key: str,
        limits: Optional[Dict[str, int]] = None,
        enabled: bool = True,
        granted_by: Optional[str] = None,
        reason: Optional[str] = None,
        actor_type: str = ActorType.ADMIN,
    ) -> FeatureGrant:
        """
        Create or replace a grant.

        Args:
            user_id: User receiving the grant
            feature_key: Catalog feature key
            limits: Limit overrides; None grants the feature unlimited
            enabled: False stores a disabled grant that resolution ignores
            granted_by: Admin or system actor id
            reason: Free-text justification kept for audit

        Raises:
            UnknownFeatureError: If feature_key is not in the catalog
            ValueError: If limits names are not in the feature's limit schema
        """
        definition = self._catalog.get_feature(feature_key)
        if limits:
            unknown = set(limits) - set(definition.limit_schema)
            if unknown:
                raise ValueError(
                    f"Unknown limits for {feature_key}: {', '.join(sorted(unknown))}"
                )

        config: Dict[str, Any] = {"enabled": enabled}
        if limits:
            config["limits"] = {name: int(value) for name, value in limits.items()}

        grant = self._grants.upsert(
            user_id, feature_key, config, granted_by=granted_by, reason=reason,
        )
        self._log_billing_event(user_id, actor_type, {
            "action": "granted",
            "feature_key": feature_key,
            "config": config,
            "granted_by": granted_by,
        })
        self.db.commit()

        logger.info("Feature grant written", extra={
            "user_id": user_id,
            "feature_key": feature_key,
            "enabled": enabled,
            "granted_by": granted_by,
        })
        self.on_grant_changed(user_id)
        return grant

    def revoke_grant(
        self,
        user_id: str,
        feature_key: str,
        revoked_by: Optional[str] = None,
        actor_type: str = ActorType.ADMIN,
    ) -> bool:
        """
        Delete a grant.

        Returns:
            True if a grant existed and was removed
        """
        removed = self._grants.delete(user_id, feature_key)
        if not removed:
            return False

        self._log_billing_event(user_id, actor_type, {
            "action": "revoked",
            "feature_key": feature_key,
            "revoked_by": revoked_by,
        })
        self.db.commit()

        logger.info("Feature grant revoked", extra={
            "user_id": user_id,
            "feature_key": feature_key,
            "revoked_by": revoked_by,
        })
        self.on_grant_changed(user_id)
        return True

    def on_grant_changed(self, user_id: str) -> None:
        """Notification hook for grant writers outside this service."""
        self._cache.invalidate(user_id, reason="grant_changed")
