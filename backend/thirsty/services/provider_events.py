"""
Parsing of Stripe webhook payloads into ledger commands.

parse_webhook_event() turns a verified raw body into a WebhookEvent.
to_ledger_command() maps the event to a LedgerCommand, or None when the
event type carries no ledger meaning.

| Event type                          | Ledger action                         |
|-------------------------------------|---------------------------------------|
| payment_intent.succeeded            | purchase_succeeded (metadata userId/planId) |
| payment_intent.payment_failed       | payment_failed (no-op without a ledger row) |
| invoice.payment_succeeded, invoice.paid | payment_succeeded                 |
| invoice.payment_failed              | payment_failed                        |
| customer.subscription.updated       | cancellation / payment_failed / period_update / deletion |
| customer.subscription.deleted       | deletion                              |
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from thirsty.services.billing_errors import MalformedEventError
from thirsty.services.subscription_state_machine import LedgerAction

logger = logging.getLogger(__name__)

EVENT_PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
EVENT_PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAID = "invoice.paid"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class WebhookEvent:
    """A verified provider event."""
    provider_event_id: str
    type: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(compare=False)

    @property
    def data_object(self) -> Dict[str, Any]:
        return (self.payload.get("data") or {}).get("object") or {}


@dataclass(frozen=True)
class LedgerCommand:
    """Ledger-level instruction derived from one provider event."""
    action: LedgerAction
    occurred_at: datetime
    external_subscription_id: Optional[str]
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    period_end: Optional[datetime] = None
    invoice_id: Optional[str] = None
    requires_existing: bool = True


def _from_unix(value: Any, field_name: str, event_id: Optional[str] = None) -> datetime:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedEventError(f"{field_name} must be a unix timestamp", event_id)
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _optional_unix(value: Any, field_name: str, event_id: str) -> Optional[datetime]:
    if value is None:
        return None
    return _from_unix(value, field_name, event_id)


def parse_webhook_event(raw_body: bytes) -> WebhookEvent:
    """
    Parse a raw webhook body.

    Raises:
        MalformedEventError: If the body is not a JSON event envelope
    """
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        raise MalformedEventError("body is not valid JSON") from None

    if not isinstance(payload, dict):
        raise MalformedEventError("event must be a JSON object")

    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not isinstance(event_id, str):
        raise MalformedEventError("event has no id")
    if not event_type or not isinstance(event_type, str):
        raise MalformedEventError("event has no type", event_id)

    occurred_at = _from_unix(payload.get("created"), "created", event_id)

    data = payload.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedEventError("event has no data.object", event_id)

    return WebhookEvent(
        provider_event_id=event_id,
        type=event_type,
        occurred_at=occurred_at,
        payload=payload,
    )


def _optional_string(value: Any, field_name: str, event_id: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise MalformedEventError(f"{field_name} must be a string", event_id)
    return value


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    metadata = obj.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _invoice_period_end(invoice: Dict[str, Any], event_id: str) -> Optional[datetime]:
    """
    Period end of the first invoice line that carries one.

    Raises:
        MalformedEventError: If lines, lines.data, a line or its period has
            the wrong shape
    """
    lines = invoice.get("lines")
    if lines is None:
        return None
    if not isinstance(lines, dict):
        raise MalformedEventError("invoice lines must be an object", event_id)

    data = lines.get("data")
    if data is None:
        return None
    if not isinstance(data, list):
        raise MalformedEventError("invoice lines.data must be a list", event_id)

    for line in data:
        if not isinstance(line, dict):
            raise MalformedEventError("invoice line must be an object", event_id)
        period = line.get("period")
        if period is None:
            continue
        if not isinstance(period, dict):
            raise MalformedEventError("invoice line period must be an object", event_id)
        if period.get("end") is not None:
            return _from_unix(period["end"], "lines.period.end", event_id)
    return None


def to_ledger_command(event: WebhookEvent) -> Optional[LedgerCommand]:
    """
    Map a provider event to a ledger command.

    Returns:
        LedgerCommand, or None for event types with no ledger meaning

    Raises:
        MalformedEventError: If a handled event type lacks required fields
            or carries them with the wrong type
    """
    obj = event.data_object
    event_id = event.provider_event_id
    metadata = _metadata(obj)

    def text(source: Dict[str, Any], key: str, field_name: Optional[str] = None) -> Optional[str]:
        return _optional_string(source.get(key), field_name or key, event_id)

    if event.type == EVENT_PAYMENT_INTENT_SUCCEEDED:
        user_id = text(metadata, "userId", "metadata.userId")
        plan_id = text(metadata, "planId", "metadata.planId")
        if not user_id or not plan_id:
            logger.info("Payment intent without subscription metadata ignored", extra={
                "provider_event_id": event_id,
            })
            return None
        external_id = (
            text(obj, "subscription")
            or text(metadata, "subscriptionId", "metadata.subscriptionId")
            or text(obj, "id")
        )
        if not external_id:
            raise MalformedEventError("payment intent has no id", event_id)
        return LedgerCommand(
            action=LedgerAction.PURCHASE_SUCCEEDED,
            occurred_at=event.occurred_at,
            external_subscription_id=external_id,
            user_id=user_id,
            plan_id=plan_id,
            external_customer_id=text(obj, "customer"),
            requires_existing=False,
        )

    if event.type == EVENT_PAYMENT_INTENT_FAILED:
        external_id = (
            text(obj, "subscription")
            or text(metadata, "subscriptionId", "metadata.subscriptionId")
            or text(obj, "id")
        )
        if not external_id:
            raise MalformedEventError("payment intent has no id", event_id)
        return LedgerCommand(
            action=LedgerAction.PAYMENT_FAILED,
            occurred_at=event.occurred_at,
            external_subscription_id=external_id,
            user_id=text(metadata, "userId", "metadata.userId"),
            requires_existing=False,
        )

    if event.type in (EVENT_INVOICE_PAYMENT_SUCCEEDED, EVENT_INVOICE_PAID, EVENT_INVOICE_PAYMENT_FAILED):
        external_id = text(obj, "subscription")
        if not external_id:
            logger.info("Invoice without subscription ignored", extra={
                "provider_event_id": event_id, "event_type": event.type,
            })
            return None
        succeeded = event.type != EVENT_INVOICE_PAYMENT_FAILED
        return LedgerCommand(
            action=LedgerAction.PAYMENT_SUCCEEDED if succeeded else LedgerAction.PAYMENT_FAILED,
            occurred_at=event.occurred_at,
            external_subscription_id=external_id,
            external_customer_id=text(obj, "customer"),
            period_end=_invoice_period_end(obj, event_id) if succeeded else None,
            invoice_id=text(obj, "id") if succeeded else None,
        )

    if event.type == EVENT_SUBSCRIPTION_UPDATED:
        external_id = text(obj, "id")
        if not external_id:
            raise MalformedEventError("subscription object has no id", event_id)
        period_end = _optional_unix(obj.get("current_period_end"), "current_period_end", event_id)
        status = obj.get("status")

        if status == "canceled":
            action = LedgerAction.DELETION
        elif obj.get("cancel_at_period_end"):
            action = LedgerAction.CANCELLATION
        elif status in ("past_due", "unpaid"):
            action = LedgerAction.PAYMENT_FAILED
        elif status in ("active", "trialing"):
            action = LedgerAction.PERIOD_UPDATE
        else:
            logger.info("Subscription update with unhandled status ignored", extra={
                "provider_event_id": event_id, "status": status,
            })
            return None

        return LedgerCommand(
            action=action,
            occurred_at=event.occurred_at,
            external_subscription_id=external_id,
            user_id=text(metadata, "userId", "metadata.userId"),
            external_customer_id=text(obj, "customer"),
            period_end=period_end,
        )

    if event.type == EVENT_SUBSCRIPTION_DELETED:
        external_id = text(obj, "id")
        if not external_id:
            raise MalformedEventError("subscription object has no id", event_id)
        return LedgerCommand(
            action=LedgerAction.DELETION,
            occurred_at=event.occurred_at,
            external_subscription_id=external_id,
            user_id=text(metadata, "userId", "metadata.userId"),
        )

    return None
