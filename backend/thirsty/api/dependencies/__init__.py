"""FastAPI dependencies."""

from thirsty.api.dependencies.entitlements import create_entitlement_check, require_feature

__all__ = ["create_entitlement_check", "require_feature"]
