"""
FastAPI application entry point for the Thirsty entitlement service.

Serves the Stripe webhook endpoint, the entitlement query API and the
admin invalidation hook. Webhook routes use signature verification,
admin routes use the shared admin token.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from thirsty.api.routes import health
from thirsty.api.routes import entitlements
from thirsty.api.routes import webhooks_stripe
from thirsty.api.routes import admin_entitlements
from thirsty.config.settings import get_settings
from thirsty.entitlements.cache import get_entitlement_cache
from thirsty.entitlements.catalog import get_feature_catalog
from thirsty.entitlements.invalidation import RedisInvalidationBus

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Thirsty entitlement API")
    settings = get_settings()

    # Fail fast on a broken catalog rather than on the first request
    catalog = get_feature_catalog()
    logger.info("Feature catalog loaded", extra={
        "features": len(catalog.feature_keys()),
        "plans": len(catalog.plans()),
    })

    if not settings.stripe_webhook_secret:
        logger.error(
            "STRIPE_WEBHOOK_SECRET is not set. Every webhook will be rejected with 400."
        )
    if not settings.database_url:
        logger.error(
            "DATABASE_URL is not set. Entitlement reads will serve free tier defaults "
            "and webhooks will return 503."
        )

    app.state.invalidation_bus = None
    if settings.redis_url:
        bus = RedisInvalidationBus.from_url(settings.redis_url, get_entitlement_cache())
        bus.attach()
        bus.start()
        app.state.invalidation_bus = bus
        logger.info("Cross-process cache invalidation enabled")
    else:
        logger.warning("REDIS_URL not set - cache invalidation is local to this process")

    yield

    # Shutdown
    if app.state.invalidation_bus is not None:
        app.state.invalidation_bus.stop()
    logger.info("Shutting down Thirsty entitlement API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Thirsty Entitlement API",
        description="Entitlement resolution and subscription synchronization",
        version="1.0.0",
        lifespan=lifespan
    )

    # Include health route (bypasses authentication)
    app.include_router(health.router)

    # Include Stripe webhook routes (uses signature verification)
    app.include_router(webhooks_stripe.router)

    # Include entitlement query routes
    app.include_router(entitlements.router)

    # Include admin routes (requires admin token)
    app.include_router(admin_entitlements.router)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        logger.error(
            "Unhandled exception",
            extra={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": "An unexpected error occurred"
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
