"""scalingad Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from scalingad.errors import (
    DoubleFundingError,
    DuplicatePayoutError,
    EscrowError,
    ForbiddenError,
    InvalidTransitionError,
    JobNotFoundError,
    PaymentProcessorError,
    SignatureInvalidError,
    StaleStateError,
    ValidationError,
)

from .config import get_settings
from .database import get_services
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import admin_router, agencies_router, jobs_router, webhooks_router
from .worker import start_worker, stop_worker, subscribe_notifications

logger = get_logger("scalingad.main")

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        f"Starting scalingad backend | storage={settings.storage_backend} | debug={settings.debug}"
    )
    services = get_services()
    subscribe_notifications(services)
    if settings.worker_enabled:
        start_worker(services, settings.worker_interval_seconds)
    yield
    # Shutdown
    await stop_worker()
    logger.info("Shutting down scalingad backend")


app = FastAPI(
    title="scalingad Backend API",
    description="Job lifecycle and escrow payments for the scalingad marketplace",
    version=VERSION,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_status(exc: EscrowError) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, ForbiddenError):
        return status.HTTP_403_FORBIDDEN
    if isinstance(exc, JobNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(
        exc, (InvalidTransitionError, StaleStateError, DoubleFundingError, DuplicatePayoutError)
    ):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, SignatureInvalidError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, PaymentProcessorError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    """Map domain errors to HTTP responses."""
    code = _error_status(exc)
    body = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InvalidTransitionError):
        body["current_status"] = exc.current_status
    elif isinstance(exc, StaleStateError):
        body["detail"] = f"{exc} - please retry"
    elif isinstance(exc, PaymentProcessorError):
        body["retryable"] = exc.retryable

    if code >= 500:
        logger.error(f"{request.method} {request.url.path} | {type(exc).__name__}: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} | {code} | {type(exc).__name__}")
    return JSONResponse(status_code=code, content=body)


# Include routers
app.include_router(jobs_router)
app.include_router(agencies_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "scalingad-backend",
        "version": VERSION,
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with actual storage verification."""
    storage_status = "disconnected"
    try:
        services = get_services()
        services.jobs.list_jobs(limit=1)
        storage_status = "connected"
    except Exception as e:
        storage_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if storage_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "storage": storage_status,
        "storage_backend": settings.storage_backend,
    }
