"""
Entitlement Resolver - compute a user's effective features and limits.

Resolution order per catalog feature (deterministic):
    1. FeatureGrant with enabled=true    -> granted, grant limits or unlimited
    2. Entitling subscription's plan     -> granted, plan limits or unlimited
    3. Catalog free tier                 -> not granted, free-tier limits

A subscription record entitles when:
    - active    and end_at > now
    - cancelled and end_at > now   (cancel at period end)
    - past_due  and now < past_due_since + grace_period

Nothing is written here. Expiry is a read-time interpretation of end_at.
"""

import logging
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from thirsty.entitlements.catalog import FeatureCatalog, get_feature_catalog
from thirsty.entitlements.errors import ResolverStorageError
from thirsty.entitlements.models import (
    UNLIMITED,
    BillingState,
    EntitlementSet,
    FeatureSource,
    ResolvedFeature,
)
from thirsty.models.base import utcnow
from thirsty.models.feature_grant import FeatureGrant
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus
from thirsty.repositories.feature_grant_repository import FeatureGrantRepository
from thirsty.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def entitlement_window_end(
    record: SubscriptionRecord,
    catalog: FeatureCatalog,
) -> Optional[datetime]:
    """Instant at which a record stops entitling, or None if it never does."""
    status = record.status
    if status in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value):
        return record.end_at
    if status == SubscriptionStatus.PAST_DUE.value and record.past_due_since is not None:
        return record.past_due_since + catalog.grace_period
    return None


def is_entitling(record: SubscriptionRecord, catalog: FeatureCatalog, now: datetime) -> bool:
    window_end = entitlement_window_end(record, catalog)
    return window_end is not None and now < window_end


def _billing_state_for(
    record: Optional[SubscriptionRecord],
    catalog: FeatureCatalog,
    now: datetime,
) -> BillingState:
    if record is None:
        return BillingState.NONE

    status = record.status
    entitling = is_entitling(record, catalog, now)

    if status == SubscriptionStatus.ACTIVE.value:
        return BillingState.ACTIVE if entitling else BillingState.EXPIRED
    if status == SubscriptionStatus.CANCELLED.value:
        return BillingState.CANCELED if entitling else BillingState.EXPIRED
    if status == SubscriptionStatus.PAST_DUE.value:
        return BillingState.GRACE_PERIOD if entitling else BillingState.PAST_DUE
    if status == SubscriptionStatus.PENDING.value:
        return BillingState.PENDING
    return BillingState.EXPIRED


def select_entitling_record(
    records: Iterable[SubscriptionRecord],
    catalog: FeatureCatalog,
    now: datetime,
) -> Optional[SubscriptionRecord]:
    """Entitling record with the latest window end; ties broken on id."""
    candidates = [r for r in records if is_entitling(r, catalog, now)]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (entitlement_window_end(r, catalog), r.id or ""))


def _latest_record(records: Iterable[SubscriptionRecord]) -> Optional[SubscriptionRecord]:
    """Most recently touched record, for describing a non-entitled user."""
    records = list(records)
    if not records:
        return None

    def sort_key(r: SubscriptionRecord):
        touched = r.last_event_at or r.updated_at or r.created_at or r.start_at
        return (touched is not None, touched or datetime.min, r.id or "")

    return max(records, key=sort_key)


def _read_only(limits: Mapping[str, int]) -> Mapping[str, int]:
    return MappingProxyType(dict(limits))


def resolve_entitlements(
    user_id: str,
    records: Iterable[SubscriptionRecord],
    grants: Iterable[FeatureGrant],
    catalog: FeatureCatalog,
    now: datetime,
) -> EntitlementSet:
    """
    Pure resolution over already-loaded rows.

    Never raises for business conditions: unknown plans and grants for keys
    missing from the catalog are logged and skipped.
    """
    records = list(records)
    grant_map = {}
    for grant in grants:
        if not catalog.has_feature(grant.feature_key):
            logger.warning("Ignoring grant for unknown feature", extra={
                "user_id": user_id, "feature_key": grant.feature_key,
            })
            continue
        if grant.enabled:
            grant_map[grant.feature_key] = grant

    subscription = select_entitling_record(records, catalog, now)
    plan = None
    if subscription is not None:
        plan = catalog.get_plan(subscription.plan_id)
        if plan is None:
            logger.error("Entitling subscription references unknown plan", extra={
                "user_id": user_id,
                "subscription_id": subscription.id,
                "plan_id": subscription.plan_id,
            })

    features = {}
    for definition in catalog.features():
        key = definition.key
        grant = grant_map.get(key)
        plan_feature = plan.get_feature(key) if plan is not None else None

        if grant is not None:
            overrides = grant.limit_overrides
            features[key] = ResolvedFeature(
                feature_key=key,
                category=definition.category,
                granted=True,
                source=FeatureSource.GRANT,
                limits=_read_only(overrides) if overrides is not None else UNLIMITED,
            )
        elif plan_feature is not None and plan_feature.enabled:
            features[key] = ResolvedFeature(
                feature_key=key,
                category=definition.category,
                granted=True,
                source=FeatureSource.SUBSCRIPTION,
                limits=_read_only(plan_feature.limits) if plan_feature.limits else UNLIMITED,
            )
        else:
            features[key] = ResolvedFeature(
                feature_key=key,
                category=definition.category,
                granted=False,
                source=FeatureSource.FREE,
                limits=_read_only(definition.free_limits),
            )

    described = subscription if subscription is not None else _latest_record(records)
    return EntitlementSet(
        user_id=user_id,
        billing_state=_billing_state_for(described, catalog, now),
        features=MappingProxyType(features),
        plan_id=subscription.plan_id if subscription is not None else None,
        subscription_id=subscription.id if subscription is not None else None,
        entitled_until=(
            entitlement_window_end(subscription, catalog) if subscription is not None else None
        ),
    )


def free_tier_entitlements(user_id: str, catalog: FeatureCatalog) -> EntitlementSet:
    """Catalog defaults for a user with nothing on record."""
    return resolve_entitlements(user_id, [], [], catalog, utcnow())


class EntitlementResolver:
    """
    Reads the ledger and grant store and resolves an EntitlementSet.

    Storage failures surface as ResolverStorageError so the cache can fall
    back to the last known snapshot.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        catalog: Optional[FeatureCatalog] = None,
        clock: Optional[Clock] = None,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._clock = clock or utcnow

    @property
    def catalog(self) -> FeatureCatalog:
        if self._catalog is not None:
            return self._catalog
        return get_feature_catalog()

    def _get_session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            from thirsty.database.session import get_session_factory
            self._session_factory = get_session_factory()
        return self._session_factory

    def now(self) -> datetime:
        return self._clock()

    def resolve(self, user_id: str) -> EntitlementSet:
        """Resolve entitlements for a user from storage."""
        try:
            session = self._get_session_factory()()
        except (SQLAlchemyError, ValueError) as exc:
            raise ResolverStorageError(user_id, exc) from exc

        try:
            return self.resolve_in_session(session, user_id)
        finally:
            session.close()

    def resolve_in_session(
        self,
        session: Session,
        user_id: str,
        now: Optional[datetime] = None,
    ) -> EntitlementSet:
        """Resolve using an existing session (sees uncommitted writes)."""
        try:
            records = SubscriptionRepository(session).list_for_user(user_id)
            grants = FeatureGrantRepository(session).list_for_user(user_id)
        except SQLAlchemyError as exc:
            logger.error("Entitlement storage read failed", extra={
                "user_id": user_id, "error": str(exc),
            })
            raise ResolverStorageError(user_id, exc) from exc

        return resolve_entitlements(
            user_id,
            records,
            grants,
            self.catalog,
            now or self.now(),
        )
