# API routes
from thirsty.api.routes import health
from thirsty.api.routes import entitlements
from thirsty.api.routes import webhooks_stripe
from thirsty.api.routes import admin_entitlements

__all__ = ["health", "entitlements", "webhooks_stripe", "admin_entitlements"]
