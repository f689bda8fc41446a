"""
Billing Engine - FastAPI Application

Main entry point for the backend API.
Provides endpoints for plans, subscriptions, payments and billing sweeps.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine.config.settings import settings
from billing_engine.infrastructure.exceptions import (
    BillingEngineError,
    DuplicateActiveSubscriptionError,
    InvalidStateError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentGatewayError,
    ValidationError,
    WebhookVerificationError,
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
    logger.info(f"Billing Engine starting in {settings.environment} mode...")

    if settings.database_url:
        try:
            from billing_engine.infrastructure.db.database import init_db
            await init_db()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.warning(f"Database initialization skipped: {e}")

    yield

    # Shutdown
    if settings.database_url:
        try:
            from billing_engine.infrastructure.db.database import close_db
            await close_db()
            logger.info("Database connection pool closed")
        except Exception as e:
            logger.warning(f"Database shutdown error: {e}")

    logger.info("Billing Engine shutting down...")


app = FastAPI(
    title="Billing Engine",
    description="Subscription and billing lifecycle: plans, proration, renewals and grace periods",
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
@app.exception_handler(WebhookVerificationError)
async def validation_error_handler(request: Request, exc: BillingEngineError):
    """Handle validation errors and rejected webhooks."""
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


@app.exception_handler(InvalidStateError)
@app.exception_handler(DuplicateActiveSubscriptionError)
async def conflict_error_handler(request: Request, exc: BillingEngineError):
    """Handle lifecycle conflicts."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentDeclinedError)
async def payment_declined_handler(request: Request, exc: PaymentDeclinedError):
    """Handle declined payments."""
    return JSONResponse(
        status_code=402,
        content=exc.to_dict(),
    )


@app.exception_handler(PaymentGatewayError)
async def payment_gateway_error_handler(request: Request, exc: PaymentGatewayError):
    """Handle gateway outages; the caller may retry."""
    logger.warning(f"Payment gateway error: {exc.message}")
    content = exc.to_dict()
    content["retryable"] = True
    return JSONResponse(
        status_code=502,
        content=content,
    )


@app.exception_handler(BillingEngineError)
async def general_error_handler(request: Request, exc: BillingEngineError):
    """Handle all other application errors."""
    logger.error(f"Unhandled billing error: {exc.message}")
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
    return {"status": "healthy", "service": "billing-engine"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Billing Engine API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from billing_engine.api.routes import admin, plans, subscriptions, webhooks  # noqa: E402

app.include_router(plans.router, prefix="/api", tags=["Plans"])
app.include_router(subscriptions.router, prefix="/api", tags=["Subscriptions"])
app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
app.include_router(admin.router)
