"""
Subscription Sync API - Main Application
========================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.errors import setup_exception_handlers
from app.core.tiers import get_tier_catalog
from app.db.session import init_db, close_db
from app.schemas.common import ErrorResponse
from app.services.cache import init_redis, close_redis

logger = logging.getLogger(__name__)

# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware adding custom attributes to each New Relic
    transaction: method, route pattern, status, latency and, when a
    handler recorded them on ``request.state``, the user ID and the
    webhook event type / ID.

    ``BaseHTTPMiddleware`` is avoided on purpose: its ``call_next()`` runs
    the endpoint in another task and the agent loses the DB and Redis
    child spans.
    """

    STATE_ATTRIBUTES = (
        ("user_id", "enduser.id"),
        ("webhook_event_type", "webhook.event_type"),
        ("webhook_event_id", "webhook.event_id"),
    )

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            txn = newrelic.agent.current_transaction()
            if txn:
                self._annotate(scope, status_code, (time.perf_counter() - start) * 1000)

    def _annotate(self, scope, status_code: int, duration_ms: float) -> None:
        route = scope.get("route")
        attributes = [
            ("http.method", scope.get("method", "")),
            ("http.route", route.path if route else scope.get("path", "unknown")),
            ("http.status_code", status_code),
            ("http.duration_ms", round(duration_ms, 2)),
            ("environment", settings.ENVIRONMENT),
        ]

        # request.state writes through to this dict
        state = scope.get("state") or {}
        for key, name in self.STATE_ATTRIBUTES:
            value = state.get(key)
            if value:
                attributes.append((name, str(value)))

        newrelic.agent.add_custom_attributes(attributes)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Tier catalog (fails fast on bad price / tier configuration)
    - Database connection
    - Redis connection (processed webhook event ledger)
    """
    # Startup
    logger.info("Starting Subscription Sync API (%s)...", settings.ENVIRONMENT)

    get_tier_catalog()

    # Initialize database
    try:
        await init_db()
    except Exception as e:
        logger.warning("Database connection failed: %s", e)
        # Continue startup even if DB fails (for health checks)

    # Initialize Redis
    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed, webhook dedup disabled until it recovers: %s", e)

    yield

    # Shutdown
    logger.info("Shutting down Subscription Sync API...")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Subscription Sync API",
    description="""
## Multi-provider subscription reconciliation

Keeps one canonical entitlement per user across web checkout (Stripe) and
native in-app purchases (App Store / Play Store via RevenueCat).

### Endpoints
- **Webhooks**: Stripe and RevenueCat lifecycle events
- **Native sync**: post-purchase sync from the mobile app
- **Status**: unified subscription view and tier table
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request or webhook signature"},
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        404: {"model": ErrorResponse, "description": "Resource not found"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API and its dependencies.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Subscription Sync API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import subscription, webhooks
app.include_router(subscription.router, prefix="/api/v1/subscription", tags=["Subscription"])
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
