"""
Structured error classes for entitlement resolution and enforcement.
"""

from typing import Optional

from fastapi import status


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class CatalogConfigError(EntitlementError):
    """Feature catalog file is missing, malformed or internally inconsistent."""
    pass


class UnknownFeatureError(EntitlementError):
    """Feature key is not present in the catalog."""

    def __init__(self, feature_key: str):
        self.feature_key = feature_key
        super().__init__(f"Unknown feature key: {feature_key}")


class ResolverStorageError(EntitlementError):
    """
    Ledger or grant store could not be read.

    The cache answers this with the last known snapshot (fail open on read).
    """

    def __init__(self, user_id: str, cause: Optional[Exception] = None):
        self.user_id = user_id
        self.cause = cause
        super().__init__(f"Entitlement storage read failed for {user_id}: {cause}")


class EntitlementEvaluationError(EntitlementError):
    """
    Raised when an entitlement read cannot complete in time.

    Carries a machine-readable error_code for the client.
    """

    def __init__(
        self,
        user_id: str,
        detail: str,
        cause: Optional[Exception] = None,
    ):
        self.user_id = user_id
        self.detail = detail
        self.cause = cause
        self.error_code = "ENTITLEMENT_EVAL_FAILED"
        super().__init__(f"Entitlement evaluation failed for {user_id}: {detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "user_id": self.user_id,
        }


class EntitlementDeniedError(EntitlementError):
    """
    Raised when a feature entitlement check fails.

    Includes machine-readable reason codes for programmatic handling.
    """

    def __init__(
        self,
        feature: str,
        billing_state: str,
        plan_id: Optional[str] = None,
        http_status: int = status.HTTP_402_PAYMENT_REQUIRED,
    ):
        """
        Initialize entitlement denied error.

        Args:
            feature: Feature key that was denied
            billing_state: Current billing state (active, grace_period, canceled, past_due, expired, none)
            plan_id: Current plan ID (if any)
            http_status: HTTP status code (default 402)
        """
        self.feature = feature
        self.billing_state = billing_state
        self.plan_id = plan_id
        self.http_status = http_status
        super().__init__(f"Feature '{feature}' denied in billing state {billing_state}")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "feature": self.feature,
            "billing_state": self.billing_state,
            "plan_id": self.plan_id,
            "machine_readable": {
                "code": self._get_reason_code(),
                "billing_state": self.billing_state,
                "feature": self.feature,
            }
        }

    def _get_reason_code(self) -> str:
        """Get machine-readable reason code."""
        if self.billing_state == "expired":
            return "subscription_expired"
        elif self.billing_state == "past_due":
            return "payment_past_due"
        elif self.billing_state in ("grace_period", "active", "canceled"):
            return "feature_not_in_plan"
        else:
            return "premium_required"
