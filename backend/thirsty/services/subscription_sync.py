"""
Subscription event synchronizer with idempotency support.

Applies Stripe webhooks to the subscription ledger with:
- Signature verification before any ledger access
- Event deduplication using the provider event id
- Per-user serialization (keyed locks + SELECT ... FOR UPDATE)
- Out-of-order handling via the subscription state machine
- Write-then-invalidate of the entitlement cache
- Audit trail of transitions, stale events and rejections

Retry policy:
- Transient storage failures raise TransientStorageError and leave the
  event unconsumed so the provider redelivers it.
- Permanent failures are logged, audited, recorded as consumed and
  acknowledged so the provider stops redelivering.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from thirsty.config.settings import get_settings
from thirsty.entitlements.cache import EntitlementCache, get_entitlement_cache
from thirsty.entitlements.catalog import FeatureCatalog, get_feature_catalog
from thirsty.entitlements.errors import ResolverStorageError
from thirsty.entitlements.resolver import EntitlementResolver
from thirsty.models.base import utcnow
from thirsty.models.billing_event import ActorType, BillingEvent, BillingEventType
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus
from thirsty.models.webhook_event import WebhookOutcome
from thirsty.platform.keyed_locks import KeyedLockRegistry, LockTimeout
from thirsty.repositories.premium_flag_repository import PremiumFlagRepository
from thirsty.repositories.subscription_repository import SubscriptionRepository
from thirsty.repositories.webhook_event_repository import WebhookEventRepository
from thirsty.services.billing_errors import (
    AuthenticityError,
    LedgerIntegrityError,
    MalformedEventError,
    PermanentEventError,
    TransientStorageError,
    UnknownPlanError,
    UnknownSubscriptionReference,
)
from thirsty.services.provider_events import (
    LedgerCommand,
    WebhookEvent,
    parse_webhook_event,
    to_ledger_command,
)
from thirsty.services.subscription_state_machine import (
    LedgerAction,
    TransitionOutcome,
    TransitionResult,
    apply_transition,
)
from thirsty.services.webhook_verification import verify_stripe_signature

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = 10.0
MAX_APPLY_ATTEMPTS = 3


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE_IGNORED = "duplicate_ignored"
    REJECTED = "rejected"


@dataclass
class ApplyResult:
    """Result of applying one webhook."""
    outcome: ApplyOutcome
    provider_event_id: Optional[str] = None
    reason: Optional[str] = None
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    mutated: bool = False
    acknowledged: bool = True

    @property
    def http_status(self) -> int:
        """200 for anything the provider should not redeliver, 400 otherwise."""
        return 200 if self.acknowledged else 400

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "provider_event_id": self.provider_event_id,
            "reason": self.reason,
            "mutated": self.mutated,
        }


class _DuplicateEvent(Exception):
    """Dedup ledger already holds the event (possibly a concurrent insert)."""


class _OwnerChanged(Exception):
    """Ledger ownership seen before locking no longer holds; retry."""


class SubscriptionSynchronizer:
    """
    Applies provider webhooks to the subscription ledger.

    Thread-safe; one instance serves the whole process so the keyed lock
    registry is shared by all request threads.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        cache: Optional[EntitlementCache] = None,
        catalog: Optional[FeatureCatalog] = None,
        resolver: Optional[EntitlementResolver] = None,
        webhook_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        locks: Optional[KeyedLockRegistry] = None,
        clock=None,
    ):
        settings = get_settings()
        if session_factory is None:
            from thirsty.database.session import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory
        self._cache = cache or get_entitlement_cache()
        self._catalog = catalog
        self._clock = clock or utcnow
        self._resolver = resolver or EntitlementResolver(
            session_factory=session_factory, catalog=catalog, clock=self._clock,
        )
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._tolerance = (
            settings.stripe_webhook_tolerance_seconds
            if tolerance_seconds is None else tolerance_seconds
        )
        self._locks = locks or KeyedLockRegistry()

    @property
    def catalog(self) -> FeatureCatalog:
        return self._catalog if self._catalog is not None else get_feature_catalog()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, raw_body: bytes, signature_header: Optional[str]) -> ApplyResult:
        """
        Verify, parse and apply one webhook delivery.

        Raises:
            TransientStorageError: The event was not consumed; respond 5xx
        """
        try:
            verify_stripe_signature(
                raw_body, signature_header, self._webhook_secret, self._tolerance,
            )
        except AuthenticityError as exc:
            logger.warning("Webhook rejected: bad signature", extra={"reason": exc.reason})
            return ApplyResult(
                outcome=ApplyOutcome.REJECTED, reason="bad_signature", acknowledged=False,
            )

        try:
            event = parse_webhook_event(raw_body)
        except MalformedEventError as exc:
            logger.warning("Webhook rejected: malformed event", extra={
                "reason": exc.reason, "provider_event_id": exc.provider_event_id,
            })
            return ApplyResult(
                outcome=ApplyOutcome.REJECTED,
                provider_event_id=exc.provider_event_id,
                reason="malformed_event",
                acknowledged=False,
            )

        return self.apply(event)

    def apply(self, event: WebhookEvent) -> ApplyResult:
        """
        Apply a verified provider event to the ledger.

        Raises:
            TransientStorageError: The event was not consumed; respond 5xx
        """
        try:
            command = to_ledger_command(event)
        except MalformedEventError as exc:
            logger.warning("Webhook rejected: malformed event", extra={
                "reason": exc.reason, "provider_event_id": event.provider_event_id,
                "event_type": event.type,
            })
            return ApplyResult(
                outcome=ApplyOutcome.REJECTED,
                provider_event_id=event.provider_event_id,
                reason="malformed_event",
                acknowledged=False,
            )

        if self._is_processed(event.provider_event_id):
            logger.info("Duplicate webhook skipped", extra={
                "provider_event_id": event.provider_event_id, "event_type": event.type,
            })
            return self._duplicate(event)

        if command is None:
            logger.info("Webhook type has no ledger effect", extra={
                "provider_event_id": event.provider_event_id, "event_type": event.type,
            })
            return self._record_without_mutation(event, WebhookOutcome.IGNORED)

        for _ in range(MAX_APPLY_ATTEMPTS):
            owner = self._find_owner(command)
            try:
                if owner is None:
                    return self._apply_orphan(event, command)
                return self._apply_for_user(event, command, owner)
            except _OwnerChanged:
                logger.info("Subscription ownership changed during apply, retrying", extra={
                    "provider_event_id": event.provider_event_id,
                    "external_subscription_id": command.external_subscription_id,
                })
        raise TransientStorageError("subscription ownership kept changing")

    # ------------------------------------------------------------------
    # Apply paths
    # ------------------------------------------------------------------

    def _apply_for_user(
        self,
        event: WebhookEvent,
        command: LedgerCommand,
        user_id: str,
    ) -> ApplyResult:
        try:
            with self._locks.hold(f"user:{user_id}", LOCK_TIMEOUT_SECONDS), \
                    self._locks.hold(f"sub:{command.external_subscription_id}", LOCK_TIMEOUT_SECONDS):
                result = self._in_transaction(
                    event, lambda session: self._apply_locked(session, event, command, user_id),
                )
        except LockTimeout as exc:
            raise TransientStorageError(str(exc), exc) from exc
        except PermanentEventError as exc:
            return self._reject(event, command, user_id, exc)

        if result.mutated:
            self._cache.invalidate(user_id, reason=f"webhook:{event.type}")
        return result

    def _apply_orphan(self, event: WebhookEvent, command: LedgerCommand) -> ApplyResult:
        """Event for a subscription id the ledger has no row for."""
        try:
            with self._locks.hold(f"sub:{command.external_subscription_id}", LOCK_TIMEOUT_SECONDS):
                return self._in_transaction(
                    event, lambda session: self._record_orphan(session, event, command),
                )
        except LockTimeout as exc:
            raise TransientStorageError(str(exc), exc) from exc

    def _in_transaction(self, event: WebhookEvent, work) -> ApplyResult:
        session: Session = self._session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except _DuplicateEvent:
            session.rollback()
            logger.info("Duplicate webhook skipped", extra={
                "provider_event_id": event.provider_event_id,
            })
            return self._duplicate(event)
        except PermanentEventError:
            session.rollback()
            raise
        except IntegrityError as exc:
            session.rollback()
            raise LedgerIntegrityError(str(exc.orig)) from exc
        except (SQLAlchemyError, ResolverStorageError) as exc:
            session.rollback()
            logger.error("Transient storage failure while applying webhook", extra={
                "provider_event_id": event.provider_event_id,
                "event_type": event.type,
                "error": str(exc),
            })
            raise TransientStorageError("ledger write failed", exc) from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def _apply_locked(
        self,
        session: Session,
        event: WebhookEvent,
        command: LedgerCommand,
        user_id: str,
    ) -> ApplyResult:
        events = WebhookEventRepository(session)
        if events.is_processed(event.provider_event_id):
            raise _DuplicateEvent()

        subscriptions = SubscriptionRepository(session)
        user_records = subscriptions.list_for_user(user_id, for_update=True)
        record = subscriptions.get_by_external_id(command.external_subscription_id, for_update=True)
        if record is not None and record.user_id != user_id:
            raise _OwnerChanged()

        if command.action == LedgerAction.PURCHASE_SUCCEEDED:
            record, transitions = self._apply_purchase(
                session, event, command, user_id, record, user_records,
            )
        else:
            if record is None:
                raise UnknownSubscriptionReference(command.external_subscription_id)
            plan = self.catalog.get_plan(record.plan_id)
            if plan is None:
                raise UnknownPlanError(record.plan_id)
            transition = apply_transition(
                record, command.action, command.occurred_at, plan.duration, command.period_end,
                invoice_id=command.invoice_id,
            )
            self._audit_transition(session, record, transition, event.provider_event_id, command)
            transitions = [transition]

        mutated = any(t.mutated for t in transitions)
        session.flush()
        if mutated:
            self._refresh_premium_flag(session, user_id)

        self._record_event(
            events,
            event,
            WebhookOutcome.APPLIED if mutated else WebhookOutcome.IGNORED,
            user_id=user_id,
            external_subscription_id=command.external_subscription_id,
        )

        logger.info("Webhook processed successfully", extra={
            "provider_event_id": event.provider_event_id,
            "event_type": event.type,
            "user_id": user_id,
            "subscription_id": record.id,
            "status": record.status,
            "mutated": mutated,
        })
        return ApplyResult(
            outcome=ApplyOutcome.APPLIED,
            provider_event_id=event.provider_event_id,
            reason=None if mutated else transitions[0].outcome.value,
            user_id=user_id,
            subscription_id=record.id,
            mutated=mutated,
        )

    def _apply_purchase(
        self,
        session: Session,
        event: WebhookEvent,
        command: LedgerCommand,
        user_id: str,
        record: Optional[SubscriptionRecord],
        user_records: List[SubscriptionRecord],
    ):
        plan = self.catalog.get_plan(command.plan_id)
        if plan is None:
            raise UnknownPlanError(command.plan_id)

        subscriptions = SubscriptionRepository(session)
        created = record is None
        if record is None:
            record = subscriptions.get_pending_for_user(user_id, plan.plan_id)
            if record is not None:
                record.external_subscription_id = command.external_subscription_id
                record.external_customer_id = command.external_customer_id
            else:
                record = subscriptions.create(
                    user_id=user_id,
                    plan_id=plan.plan_id,
                    external_subscription_id=command.external_subscription_id,
                    external_customer_id=command.external_customer_id,
                )
                user_records.append(record)
                self._log_audit_event(
                    session,
                    BillingEventType.SUBSCRIPTION_CREATED,
                    user_id=user_id,
                    record=record,
                    provider_event_id=event.provider_event_id,
                    to_status=SubscriptionStatus.PENDING.value,
                )

        transition = apply_transition(
            record, LedgerAction.PURCHASE_SUCCEEDED, command.occurred_at,
            plan.duration, command.period_end,
        )
        self._audit_transition(session, record, transition, event.provider_event_id, command)
        transitions = [transition]

        if created:
            transitions.extend(self._replay_orphans(session, record, plan.duration))

        if record.status == SubscriptionStatus.ACTIVE.value and transition.mutated:
            transitions.extend(
                self._supersede_others(session, record, user_records, command.occurred_at)
            )
        return record, transitions

    def _replay_orphans(self, session: Session, record: SubscriptionRecord, duration) -> List[TransitionResult]:
        """Apply events that arrived before this purchase reached the ledger."""
        results = []
        for orphan in WebhookEventRepository(session).list_orphans(record.external_subscription_id):
            transition = apply_transition(
                record,
                LedgerAction(orphan.ledger_action),
                orphan.occurred_at,
                duration,
                orphan.period_end,
                invoice_id=orphan.invoice_id,
            )
            self._log_audit_event(
                session,
                transition.audit_event_type,
                user_id=record.user_id,
                record=record,
                provider_event_id=orphan.provider_event_id,
                from_status=transition.from_status,
                to_status=transition.to_status,
                occurred_at=orphan.occurred_at,
                metadata={"replayed": True, "action": orphan.ledger_action},
            )
            orphan.outcome = WebhookOutcome.APPLIED if transition.mutated else WebhookOutcome.IGNORED
            orphan.user_id = record.user_id
            results.append(transition)
            logger.info("Replayed orphaned webhook", extra={
                "provider_event_id": orphan.provider_event_id,
                "subscription_id": record.id,
                "outcome": transition.outcome.value,
            })
        return results

    def _supersede_others(
        self,
        session: Session,
        record: SubscriptionRecord,
        user_records: List[SubscriptionRecord],
        occurred_at: datetime,
    ) -> List[TransitionResult]:
        """Keep at most one active record per user: the newest purchase wins."""
        results = []
        for other in user_records:
            if other.id == record.id or other.status not in (
                SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value,
            ):
                continue

            if other.start_at is not None and other.start_at > occurred_at:
                # Delivered late: the other purchase is newer and wins
                loser, cutoff = record, max(other.start_at, record.last_event_at)
            else:
                loser, cutoff = other, max(occurred_at, other.last_event_at or occurred_at)

            plan = self.catalog.get_plan(loser.plan_id)
            duration = plan.duration if plan is not None else None
            transition = apply_transition(loser, LedgerAction.DELETION, cutoff, duration)
            if transition.mutated:
                self._log_audit_event(
                    session,
                    BillingEventType.SUBSCRIPTION_SUPERSEDED,
                    user_id=loser.user_id,
                    record=loser,
                    from_status=transition.from_status,
                    to_status=transition.to_status,
                    occurred_at=cutoff,
                )
                logger.info("Subscription superseded by newer purchase", extra={
                    "user_id": loser.user_id, "subscription_id": loser.id,
                })
            results.append(transition)
            if loser is record:
                break
        return results

    def _record_orphan(self, session: Session, event: WebhookEvent, command: LedgerCommand) -> ApplyResult:
        subscriptions = SubscriptionRepository(session)
        if subscriptions.get_by_external_id(command.external_subscription_id) is not None:
            raise _OwnerChanged()

        events = WebhookEventRepository(session)
        if events.is_processed(event.provider_event_id):
            raise _DuplicateEvent()

        if not command.requires_existing:
            # e.g. an initial payment intent failing before any purchase
            self._record_event(
                events, event, WebhookOutcome.IGNORED,
                user_id=command.user_id,
                external_subscription_id=command.external_subscription_id,
            )
            return ApplyResult(
                outcome=ApplyOutcome.APPLIED,
                provider_event_id=event.provider_event_id,
                reason="no_ledger_row",
                user_id=command.user_id,
            )

        self._record_event(
            events, event, WebhookOutcome.ORPHANED,
            user_id=command.user_id,
            external_subscription_id=command.external_subscription_id,
            ledger_action=command.action.value,
            period_end=command.period_end,
            invoice_id=command.invoice_id,
        )

        if command.action == LedgerAction.DELETION:
            logger.info("Deletion for unknown subscription treated as already gone", extra={
                "provider_event_id": event.provider_event_id,
                "external_subscription_id": command.external_subscription_id,
            })
            return ApplyResult(
                outcome=ApplyOutcome.DUPLICATE_IGNORED,
                provider_event_id=event.provider_event_id,
                reason="subscription_already_gone",
            )

        logger.error("Webhook refers to unknown subscription", extra={
            "provider_event_id": event.provider_event_id,
            "event_type": event.type,
            "external_subscription_id": command.external_subscription_id,
        })
        self._log_audit_event(
            session,
            BillingEventType.EVENT_REJECTED,
            user_id=command.user_id,
            external_subscription_id=command.external_subscription_id,
            provider_event_id=event.provider_event_id,
            occurred_at=event.occurred_at,
            metadata={"reason": UnknownSubscriptionReference.reason, "event_type": event.type},
        )
        return ApplyResult(
            outcome=ApplyOutcome.REJECTED,
            provider_event_id=event.provider_event_id,
            reason=UnknownSubscriptionReference.reason,
        )

    def _reject(
        self,
        event: WebhookEvent,
        command: LedgerCommand,
        user_id: Optional[str],
        error: PermanentEventError,
    ) -> ApplyResult:
        """Record a permanently failed event so it is not redelivered."""
        logger.error("Webhook permanently rejected", extra={
            "provider_event_id": event.provider_event_id,
            "event_type": event.type,
            "user_id": user_id,
            "reason": error.reason,
            "error": str(error),
        })

        def work(session: Session) -> ApplyResult:
            events = WebhookEventRepository(session)
            if events.is_processed(event.provider_event_id):
                raise _DuplicateEvent()
            self._record_event(
                events, event, WebhookOutcome.REJECTED,
                user_id=user_id,
                external_subscription_id=command.external_subscription_id,
            )
            self._log_audit_event(
                session,
                BillingEventType.EVENT_REJECTED,
                user_id=user_id,
                external_subscription_id=command.external_subscription_id,
                provider_event_id=event.provider_event_id,
                occurred_at=event.occurred_at,
                metadata={"reason": error.reason, "event_type": event.type, "error": str(error)},
            )
            return ApplyResult(
                outcome=ApplyOutcome.REJECTED,
                provider_event_id=event.provider_event_id,
                reason=error.reason,
                user_id=user_id,
            )

        try:
            return self._in_transaction(event, work)
        except LedgerIntegrityError as exc:
            raise TransientStorageError("could not record rejected event", exc) from exc

    def _record_without_mutation(self, event: WebhookEvent, outcome: str) -> ApplyResult:
        def work(session: Session) -> ApplyResult:
            self._record_event(WebhookEventRepository(session), event, outcome)
            return ApplyResult(
                outcome=ApplyOutcome.APPLIED,
                provider_event_id=event.provider_event_id,
                reason="unhandled_event_type",
            )

        try:
            return self._in_transaction(event, work)
        except LedgerIntegrityError as exc:
            raise TransientStorageError("could not record ignored event", exc) from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _duplicate(self, event: WebhookEvent) -> ApplyResult:
        return ApplyResult(
            outcome=ApplyOutcome.DUPLICATE_IGNORED,
            provider_event_id=event.provider_event_id,
            reason="duplicate",
        )

    def _is_processed(self, provider_event_id: str) -> bool:
        session: Session = self._session_factory()
        try:
            return WebhookEventRepository(session).is_processed(provider_event_id)
        except SQLAlchemyError as exc:
            raise TransientStorageError("dedup lookup failed", exc) from exc
        finally:
            session.close()

    def _find_owner(self, command: LedgerCommand) -> Optional[str]:
        """User owning the referenced subscription, before any lock is taken."""
        session: Session = self._session_factory()
        try:
            record = SubscriptionRepository(session).get_by_external_id(
                command.external_subscription_id
            )
        except SQLAlchemyError as exc:
            raise TransientStorageError("ledger lookup failed", exc) from exc
        finally:
            session.close()

        if record is not None:
            return record.user_id
        if command.action == LedgerAction.PURCHASE_SUCCEEDED:
            return command.user_id
        return None

    def _record_event(
        self,
        events: WebhookEventRepository,
        event: WebhookEvent,
        outcome: str,
        user_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
        ledger_action: Optional[str] = None,
        period_end: Optional[datetime] = None,
        invoice_id: Optional[str] = None,
    ) -> None:
        try:
            events.record(
                provider_event_id=event.provider_event_id,
                event_type=event.type,
                occurred_at=event.occurred_at,
                payload=event.payload,
                outcome=outcome,
                user_id=user_id,
                external_subscription_id=external_subscription_id,
                ledger_action=ledger_action,
                period_end=period_end,
                invoice_id=invoice_id,
            )
        except IntegrityError:
            raise _DuplicateEvent() from None

    def _refresh_premium_flag(self, session: Session, user_id: str) -> None:
        """Write the denormalized premium flag from the new ledger state."""
        now = self._clock()
        entitlements = self._resolver.resolve_in_session(session, user_id, now=now)
        PremiumFlagRepository(session).set(
            user_id,
            is_premium=entitlements.is_premium,
            premium_expires_at=entitlements.entitled_until,
            now=now,
        )

    def _audit_transition(
        self,
        session: Session,
        record: SubscriptionRecord,
        transition: TransitionResult,
        provider_event_id: str,
        command: LedgerCommand,
    ) -> None:
        metadata = {"action": command.action.value}
        if transition.outcome != TransitionOutcome.APPLIED:
            metadata["warning"] = transition.outcome.value
        self._log_audit_event(
            session,
            transition.audit_event_type,
            user_id=record.user_id,
            record=record,
            provider_event_id=provider_event_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
            occurred_at=command.occurred_at,
            metadata=metadata,
        )

    def _log_audit_event(
        self,
        session: Session,
        event_type: str,
        user_id: Optional[str] = None,
        record: Optional[SubscriptionRecord] = None,
        external_subscription_id: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log billing event to audit table."""
        session.add(BillingEvent(
            user_id=user_id,
            event_type=event_type,
            actor_type=ActorType.WEBHOOK,
            subscription_id=record.id if record is not None else None,
            external_subscription_id=(
                record.external_subscription_id if record is not None else external_subscription_id
            ),
            provider_event_id=provider_event_id,
            from_status=from_status,
            to_status=to_status,
            occurred_at=occurred_at,
            extra_metadata=metadata,
        ))


_synchronizer: Optional[SubscriptionSynchronizer] = None


def get_subscription_synchronizer() -> SubscriptionSynchronizer:
    """Get the process-wide synchronizer (shares one lock registry)."""
    global _synchronizer
    if _synchronizer is None:
        _synchronizer = SubscriptionSynchronizer()
    return _synchronizer


def set_subscription_synchronizer(synchronizer: Optional[SubscriptionSynchronizer]) -> None:
    """Replace the process-wide synchronizer (app wiring and tests)."""
    global _synchronizer
    _synchronizer = synchronizer
