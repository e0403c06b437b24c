"""
MagnetHub Billing - FastAPI Application

Main entry point for the billing API.
Provides subscription, usage-quota and Stripe webhook endpoints.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config.settings import settings
from app.infrastructure.exceptions import (
    ConflictError,
    ExternalGatewayError,
    MagnetHubError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"MagnetHub Billing starting in {settings.environment} mode...")

    if settings.database_url:
        from app.infrastructure.db.database import init_db
        await init_db()
        logger.info("Database connection pool initialized")
    else:
        logger.warning("DATABASE_URL not set; database connection deferred to first use")

    yield

    # Shutdown
    if settings.database_url:
        from app.infrastructure.db.database import close_db
        await close_db()
        logger.info("Database connection pool closed")

    logger.info("MagnetHub Billing shutting down...")


app = FastAPI(
    title="MagnetHub Billing",
    description="Subscription, usage entitlement and Stripe reconciliation service",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError):
    """Handle requests that conflict with the subscription state."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(QuotaExceededError)
async def quota_exceeded_handler(request: Request, exc: QuotaExceededError):
    """Handle exhausted quotas; the body carries cap and reset date."""
    return JSONResponse(
        status_code=402,
        content=exc.to_dict(),
    )


@app.exception_handler(ExternalGatewayError)
async def gateway_error_handler(request: Request, exc: ExternalGatewayError):
    """Handle payment gateway failures."""
    logger.error(f"Gateway error on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=502,
        content=exc.to_dict(),
    )


@app.exception_handler(MagnetHubError)
async def general_error_handler(request: Request, exc: MagnetHubError):
    """Handle all other application errors (database, configuration)."""
    logger.error(f"Unhandled {exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "magnethub-billing"}


# ============================================================================
# Import and register routers
# ============================================================================

from app.api.routes import billing, webhooks  # noqa: E402

app.include_router(billing.router, prefix="/api", tags=["Billing"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
