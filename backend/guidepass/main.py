"""
Guidepass Billing - Main FastAPI Application.

Gates narrated guide generation behind trial credits, purchased credit
packages and the unlimited subscription, and ingests payment provider
lifecycle webhooks.

Run with:
    uvicorn guidepass.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from guidepass.api.v1.entitlements import router as entitlements_router
from guidepass.api.v1.usage import router as usage_router
from guidepass.api.v1.webhooks import router as webhooks_router
from guidepass.config import get_settings
from guidepass.constants import API_TITLE, API_VERSION
from guidepass.logging_config import setup_logging
from guidepass.middleware import RequestContextMiddleware
from guidepass.services.billing_repository import (
    InMemoryBillingRepository,
    SupabaseBillingRepository,
)
from guidepass.services.billing_service import BillingService
from guidepass.services.product_catalog import ProductCatalog

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

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
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    if supabase_client is not None:
        repository = SupabaseBillingRepository(supabase_client, settings.supabase_tables)
    else:
        # Single-process only: state is lost on restart and not shared between instances
        repository = InMemoryBillingRepository()
        logger.warning("billing_repository_in_memory")

    catalog = ProductCatalog(settings.catalog)
    _app.state.billing_service = BillingService(repository, settings.billing, catalog=catalog)
    logger.info(
        "services_initialized",
        free_trial_credits=settings.billing.free_trial_credits,
        packages=[p.package_id for p in catalog.active_packages()],
    )

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Credit ledger, entitlement and purchase reconciliation API for "
        "narrated point-of-interest guides."
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
app.include_router(entitlements_router, prefix="/api/v1")
app.include_router(usage_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
