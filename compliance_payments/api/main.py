"""
Main FastAPI application.

Payment transaction API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from compliance_payments import __version__
from compliance_payments.config import get_settings
from compliance_payments.core.rate_limiter import RateLimiter, RedisRateLimiter
from compliance_payments.database.connection import close_db, init_db
from compliance_payments.monitoring.logging import setup_logging

from .dependencies import get_paystack_client, get_rate_limiter
from .routes import (
    admin_router,
    monitoring_router,
    operations_router,
    payment_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


async def _rate_limiter_cleanup_loop(limiter: RateLimiter, interval_seconds: int) -> None:
    """Periodically drop expired in-memory rate limit windows."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = limiter.cleanup()
        logger.debug("rate_limiter_cleanup_completed", removed=removed, tracked=len(limiter))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except SQLAlchemyError as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    limiter = get_rate_limiter()
    cleanup_task: Optional[asyncio.Task] = None
    if isinstance(limiter, RateLimiter):
        cleanup_task = asyncio.create_task(
            _rate_limiter_cleanup_loop(limiter, settings.rate_limit_cleanup_seconds)
        )

    yield

    # Shutdown
    logger.info("application_shutdown")
    if cleanup_task is not None:
        cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cleanup_task
    if isinstance(limiter, RedisRateLimiter):
        await limiter.close()

    await get_paystack_client().close()

    try:
        await close_db()
        logger.info("database_connections_closed")
    except SQLAlchemyError as e:
        logger.error("database_shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="Compliance Payments",
    description=(
        "Payment transaction lifecycle for the tax compliance platform: Paystack "
        "initialisation and verification, signed webhook reconciliation and a "
        "sweep for transactions Paystack never confirmed."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed request bodies and parameters as 400."""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg")} for error in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, errors=errors)

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request", "errors": errors},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


# Include routers
app.include_router(payment_router)
app.include_router(operations_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "compliance_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
