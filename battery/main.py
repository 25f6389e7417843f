"""
Battery Ledger - Main FastAPI Application.

Prepaid battery metering for AI calls: balance checks, usage debits,
daily allowances and Stripe subscription lifecycle.

Run with:
    uvicorn battery.main:app --reload
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from battery.api.v1.battery import router as battery_router
from battery.api.v1.billing import router as billing_router
from battery.config import get_settings
from battery.constants import API_TITLE, API_VERSION
from battery.logging_config import setup_logging
from battery.middleware import RequestContextMiddleware
from battery.services.daily_reset import DailyAllowanceService
from battery.services.ledger import BatteryLedger
from battery.services.plan_catalog import PlanCatalog
from battery.services.sql_store import SqlBatteryStore
from battery.services.stripe_service import StripeService
from battery.services.subscription_service import SubscriptionService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug, settings.log_level)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Authenticated endpoints will return 503")

    _app.state.supabase = supabase_client

    store = SqlBatteryStore.from_url(settings.database.url, echo=settings.database.echo)
    if settings.database.create_tables:
        await store.create_tables()

    ledger = BatteryLedger(store, settings.billing)
    catalog = PlanCatalog(settings.stripe.plan_prices(), settings.billing.default_plan_id)
    subscription_service = SubscriptionService(ledger, catalog)
    daily_reset_service = DailyAllowanceService(ledger, settings.daily_reset)

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured", mapped_prices=len(catalog.price_mapping))
    else:
        logger.warning("stripe_not_configured", detail="Webhook endpoint will return 503")

    _app.state.store = store
    _app.state.ledger = ledger
    _app.state.subscription_service = subscription_service
    _app.state.daily_reset_service = daily_reset_service
    _app.state.stripe_service = stripe_service

    stop_event = asyncio.Event()
    reset_task: asyncio.Task | None = None
    if settings.daily_reset.enabled:
        reset_task = asyncio.create_task(daily_reset_service.run_periodically(stop_event))

    logger.info("services_initialized", database=store.engine.dialect.name)

    yield

    stop_event.set()
    if reset_task is not None:
        await reset_task
    await store.dispose()
    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Prepaid battery metering for AI calls. Tracks per-user balances, "
        "charges usage by model, tops up daily allowances and keeps "
        "Stripe subscriptions in sync."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(battery_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Prepaid battery metering and subscription lifecycle",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
