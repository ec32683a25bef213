"""
Error taxonomy for provider webhook processing.

Mapping at the webhook endpoint:
- AuthenticityError, MalformedEventError -> 400, nothing written
- TransientStorageError                   -> 503, event not consumed (provider retries)
- PermanentEventError subclasses          -> logged, audited, consumed, 200
"""

from typing import Optional


class BillingSyncError(Exception):
    """Base exception for subscription synchronization errors."""
    pass


class AuthenticityError(BillingSyncError):
    """Webhook signature missing, malformed, expired or wrong."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook authenticity check failed: {reason}")


class MalformedEventError(BillingSyncError):
    """Webhook body is not a well-formed provider event."""

    def __init__(self, reason: str, provider_event_id: Optional[str] = None):
        self.reason = reason
        self.provider_event_id = provider_event_id
        super().__init__(f"Malformed webhook event: {reason}")


class TransientStorageError(BillingSyncError):
    """Ledger write failed for a reason that may succeed on redelivery."""

    def __init__(self, detail: str, cause: Optional[Exception] = None):
        self.detail = detail
        self.cause = cause
        super().__init__(f"Transient storage failure: {detail}")


class PermanentEventError(BillingSyncError):
    """Event can never be applied; it is recorded and acknowledged."""

    reason = "permanent_failure"


class UnknownSubscriptionReference(PermanentEventError):
    """Event refers to a provider subscription the ledger has never seen."""

    reason = "unknown_subscription_reference"

    def __init__(self, external_subscription_id: Optional[str]):
        self.external_subscription_id = external_subscription_id
        super().__init__(f"Unknown subscription reference: {external_subscription_id}")


class UnknownPlanError(PermanentEventError):
    """Purchase names a plan that is not in the feature catalog."""

    reason = "unknown_plan"

    def __init__(self, plan_id: Optional[str]):
        self.plan_id = plan_id
        super().__init__(f"Unknown plan: {plan_id}")


class LedgerIntegrityError(PermanentEventError):
    """Ledger constraint violated while applying an event."""

    reason = "ledger_integrity_error"
