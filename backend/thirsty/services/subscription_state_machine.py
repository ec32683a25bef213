"""
Subscription state machine.

Every ledger mutation driven by a provider event goes through
apply_transition(). The transition table is explicit: any (status, action)
pair not listed is an illegal transition and leaves the record untouched.

| Current                    | Action             | Next      |
|----------------------------|--------------------|-----------|
| pending / active           | purchase_succeeded | active    |
| active / past_due          | payment_succeeded  | active    |
| active / past_due          | payment_failed     | past_due  |
| active / past_due / cancelled | cancellation    | cancelled |
| pending / active / past_due / cancelled | deletion | cancelled |
| active / past_due / cancelled | period_update   | active    |

Events older than the record's last_event_at are skipped as stale so that
out-of-order deliveries converge on the state implied by the newest event.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

from thirsty.models.billing_event import BillingEventType
from thirsty.models.subscription import SubscriptionRecord, SubscriptionStatus

logger = logging.getLogger(__name__)


class LedgerAction(str, Enum):
    """Ledger-level meaning of a provider event."""
    PURCHASE_SUCCEEDED = "purchase_succeeded"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CANCELLATION = "cancellation"
    DELETION = "deletion"
    PERIOD_UPDATE = "period_update"


_S = SubscriptionStatus
_A = LedgerAction

VALID_TRANSITIONS: Dict[Tuple[SubscriptionStatus, LedgerAction], SubscriptionStatus] = {
    (_S.PENDING, _A.PURCHASE_SUCCEEDED): _S.ACTIVE,
    (_S.ACTIVE, _A.PURCHASE_SUCCEEDED): _S.ACTIVE,
    (_S.ACTIVE, _A.PAYMENT_SUCCEEDED): _S.ACTIVE,
    (_S.PAST_DUE, _A.PAYMENT_SUCCEEDED): _S.ACTIVE,
    (_S.ACTIVE, _A.PAYMENT_FAILED): _S.PAST_DUE,
    (_S.PAST_DUE, _A.PAYMENT_FAILED): _S.PAST_DUE,
    (_S.ACTIVE, _A.CANCELLATION): _S.CANCELLED,
    (_S.PAST_DUE, _A.CANCELLATION): _S.CANCELLED,
    (_S.CANCELLED, _A.CANCELLATION): _S.CANCELLED,
    (_S.PENDING, _A.DELETION): _S.CANCELLED,
    (_S.ACTIVE, _A.DELETION): _S.CANCELLED,
    (_S.PAST_DUE, _A.DELETION): _S.CANCELLED,
    (_S.CANCELLED, _A.DELETION): _S.CANCELLED,
    (_S.ACTIVE, _A.PERIOD_UPDATE): _S.ACTIVE,
    (_S.PAST_DUE, _A.PERIOD_UPDATE): _S.ACTIVE,
    (_S.CANCELLED, _A.PERIOD_UPDATE): _S.ACTIVE,
}

_AUDIT_TYPES = {
    _A.PURCHASE_SUCCEEDED: BillingEventType.SUBSCRIPTION_ACTIVATED,
    _A.PAYMENT_SUCCEEDED: BillingEventType.SUBSCRIPTION_RENEWED,
    _A.PAYMENT_FAILED: BillingEventType.SUBSCRIPTION_PAST_DUE,
    _A.CANCELLATION: BillingEventType.SUBSCRIPTION_CANCELLED,
    _A.DELETION: BillingEventType.SUBSCRIPTION_DELETED,
    _A.PERIOD_UPDATE: BillingEventType.SUBSCRIPTION_PERIOD_UPDATED,
}


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    INVALID = "invalid_transition"


@dataclass(frozen=True)
class TransitionResult:
    """Result of one state machine step."""
    outcome: TransitionOutcome
    from_status: str
    to_status: str
    audit_event_type: str

    @property
    def mutated(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED


def is_valid_transition(current: SubscriptionStatus, action: LedgerAction) -> bool:
    return (current, action) in VALID_TRANSITIONS


def apply_transition(
    record: SubscriptionRecord,
    action: LedgerAction,
    occurred_at: datetime,
    plan_duration: timedelta,
    period_end: Optional[datetime] = None,
    invoice_id: Optional[str] = None,
) -> TransitionResult:
    """
    Apply one provider action to a ledger record in place.

    Args:
        record: Ledger row (mutated only when the outcome is APPLIED)
        action: Ledger-level action of the event
        occurred_at: Provider timestamp of the event
        plan_duration: Length of one billing period for the record's plan
        period_end: Provider-reported end of the current period, if any
        invoice_id: Invoice behind a payment_succeeded action; an invoice
            extends the period at most once

    Returns:
        TransitionResult describing what happened
    """
    current = SubscriptionStatus(record.status)

    if record.last_event_at is not None and occurred_at < record.last_event_at:
        logger.info("Skipping stale subscription event", extra={
            "subscription_id": record.id,
            "action": action.value,
            "occurred_at": occurred_at.isoformat(),
            "last_event_at": record.last_event_at.isoformat(),
        })
        return TransitionResult(
            TransitionOutcome.STALE, current.value, current.value,
            BillingEventType.STALE_EVENT_IGNORED,
        )

    target = VALID_TRANSITIONS.get((current, action))
    if target is None or not _guard(record, action, occurred_at):
        logger.warning("Invalid subscription state transition", extra={
            "subscription_id": record.id,
            "from": current.value,
            "action": action.value,
        })
        return TransitionResult(
            TransitionOutcome.INVALID, current.value, current.value,
            BillingEventType.INVALID_TRANSITION,
        )

    if action == LedgerAction.PURCHASE_SUCCEEDED:
        record.start_at = occurred_at
        record.end_at = period_end or occurred_at + plan_duration
        record.auto_renew = True
        record.past_due_since = None
        record.cancelled_at = None

    elif action == LedgerAction.PAYMENT_SUCCEEDED:
        if invoice_id is not None and invoice_id == record.last_invoice_id:
            # invoice.paid and invoice.payment_succeeded report the same payment
            pass
        elif period_end is not None:
            record.end_at = max(period_end, record.end_at) if record.end_at else period_end
        else:
            base = record.end_at if record.end_at and record.end_at > occurred_at else occurred_at
            record.end_at = base + plan_duration
        record.past_due_since = None
        if invoice_id is not None:
            record.last_invoice_id = invoice_id

    elif action == LedgerAction.PAYMENT_FAILED:
        if current != SubscriptionStatus.PAST_DUE or record.past_due_since is None:
            record.past_due_since = occurred_at

    elif action == LedgerAction.CANCELLATION:
        record.auto_renew = False
        if record.cancelled_at is None:
            record.cancelled_at = occurred_at
        if period_end is not None:
            record.end_at = period_end

    elif action == LedgerAction.DELETION:
        record.auto_renew = False
        record.cancelled_at = occurred_at
        record.past_due_since = None
        if record.end_at is None or record.end_at > occurred_at:
            record.end_at = occurred_at

    elif action == LedgerAction.PERIOD_UPDATE:
        if period_end is not None:
            record.end_at = period_end
        record.past_due_since = None
        record.auto_renew = True
        record.cancelled_at = None

    record.status = target.value
    record.last_event_at = occurred_at

    return TransitionResult(
        TransitionOutcome.APPLIED, current.value, target.value, _AUDIT_TYPES[action],
    )


def _guard(record: SubscriptionRecord, action: LedgerAction, occurred_at: datetime) -> bool:
    """Extra conditions beyond the (status, action) table."""
    if action == LedgerAction.PERIOD_UPDATE and record.status == SubscriptionStatus.CANCELLED.value:
        # Resuming is only possible while the paid period is still running
        return record.end_at is not None and record.end_at > occurred_at
    return True
