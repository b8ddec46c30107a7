# pyright: reportMissingTypeStubs=false
"""
Referral Settlement Backend API

A FastAPI application exposing the referral settlement pipeline to the
operations team.

Features:
- Clinic report review queue (approve, reject, edit, relink)
- Commission computation with global and per-agent tier schedules
- Idempotent payouts through the external settlement provider
- Scheduled report ingestion and payout status sync
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import clinic_reports, commission_tiers, payments, referrals
from core.config import ENABLE_SCHEDULER
from core.constants import CORS_ORIGINS
from core.exceptions import NotFoundError, PreconditionError, ProviderError, ValidationError
from services.notification_service import build_notification_sink
from services.payout_gateway import PayoutGateway
from services.report_ingestion_service import HttpReportProducer
from services.report_matcher import ReportMatcher
from services.settlement_provider_client import SettlementProviderClient
from services.settlement_scheduler import start_settlement_scheduler, stop_settlement_scheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)
logger.info("🏥 Referral Settlement API starting...")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager: builds collaborators, runs the scheduler."""
    logger.info("🚀 Starting Referral Settlement Backend API")

    provider_client = SettlementProviderClient()
    if not provider_client.is_configured:
        logger.warning("⚠️  Settlement provider API key not set, payouts cannot be submitted")
    notifier = build_notification_sink()
    app.state.payout_gateway = PayoutGateway(provider_client, notifier)
    app.state.report_producer = HttpReportProducer()
    app.state.report_matcher = ReportMatcher()

    # Note: Database sessions are created fresh for each scheduler run
    if ENABLE_SCHEDULER:
        try:
            await start_settlement_scheduler(
                app.state.payout_gateway, app.state.report_producer, app.state.report_matcher
            )
            logger.info("✅ Settlement scheduler started")
        except Exception as e:
            logger.exception(f"❌ Failed to start settlement scheduler: {e}")

    yield

    try:
        await stop_settlement_scheduler()
    except Exception as e:
        logger.exception(f"❌ Error stopping settlement scheduler: {e}")
    provider_client.close()
    close_notifier = getattr(notifier, "close", None)
    if close_notifier is not None:
        close_notifier()

    logger.info("🛑 Shutting down Referral Settlement Backend API")


# Create FastAPI application
app = FastAPI(
    title="Referral Settlement Backend",
    description="Clinic report reconciliation, commission settlement and agent payouts",
    version="1.0.0",
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    lifespan=lifespan,
)

# CORS middleware for the admin dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(
    clinic_reports.router,
    prefix="/api/clinic-reports",
    tags=["clinic-reports"],
    responses={
        400: {"description": "Bad request"},
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        500: {"description": "Internal server error"},
    },
)
app.include_router(
    payments.router,
    prefix="/api/payments",
    tags=["payments"],
    responses={
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        500: {"description": "Internal server error"},
    },
)
app.include_router(
    referrals.router,
    prefix="/api/referrals",
    tags=["referrals"],
    responses={
        400: {"description": "Bad request"},
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        500: {"description": "Internal server error"},
    },
)
app.include_router(
    commission_tiers.router,
    prefix="/api/commission-tiers",
    tags=["commission-tiers"],
    responses={
        400: {"description": "Bad request"},
        404: {"description": "Resource not found"},
        500: {"description": "Internal server error"},
    },
)


@app.get(
    "/",
    summary="Root endpoint",
    description="Returns basic API information",
)
async def root() -> dict[str, str]:
    """Get API information."""
    return {
        "message": "Referral Settlement Backend API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get(
    "/health",
    summary="Health check",
    description="Returns the health status of the API",
)
async def health_check() -> dict[str, str]:
    """Check if the API is healthy and responding."""
    return {"status": "healthy"}


# Global exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Malformed input; nothing was changed."""
    logger.warning(f"ValidationError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "type": "validation_error", "field": exc.field},
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    return JSONResponse(
        status_code=404,
        content={"detail": str(exc), "type": "not_found"},
    )


@app.exception_handler(PreconditionError)
async def precondition_error_handler(request: Request, exc: PreconditionError):
    """Well-formed request blocked by the current state."""
    logger.warning(f"PreconditionError: {exc}")
    return JSONResponse(
        status_code=409,
        content={"detail": str(exc), "type": "precondition_failed"},
    )


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"ProviderError: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": exc.detail, "type": "provider_error", "code": exc.code},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError exceptions."""
    logger.warning(f"ValueError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "type": "validation_error"},
    )


@app.exception_handler(httpx.HTTPError)
async def http_error_handler(request: Request, exc: httpx.HTTPError):
    """Handle errors from external services."""
    logger.exception(f"External service error: {exc}")
    return JSONResponse(
        status_code=502,
        content={"detail": "External service error", "type": "external_service_error"},
    )
