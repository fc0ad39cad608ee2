"""
Main FastAPI application.

Quote payments API with:
- CORS configuration
- Error handling mapped from the service error hierarchy
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from quote_payments import __version__
from quote_payments.bootstrap import Services, build_services
from quote_payments.config import Settings, load_settings
from quote_payments.core.errors import QuotePaymentError
from quote_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    monitoring_router,
    payment_router,
    quote_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings, loaded from the environment when omitted
        services: Prebuilt service container (tests inject one)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or (services.settings if services is not None else load_settings())
    setup_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )

        try:
            await services.startup()
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        try:
            await services.shutdown()
        except Exception as e:
            logger.error("database_shutdown_error", error=str(e))

    app = FastAPI(
        title="Quote Payments",
        description=(
            "Quote lifecycle and payment reconciliation. "
            "Features: exact money arithmetic, compare-and-set state transitions, "
            "signed and deduplicated Stripe webhooks, and Prometheus metrics."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

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
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
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

            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(QuotePaymentError)
    async def quote_payment_error_handler(request: Request, exc: QuotePaymentError) -> JSONResponse:
        """Map service errors to their status code and error body."""
        log = logger.error if exc.http_status >= 500 else logger.warning
        log(
            "request_rejected",
            error_code=exc.error_code,
            error=exc.message,
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

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
                "error": {
                    "code": "internal_error",
                    "message": "An unexpected error occurred. Please try again later.",
                    "type": "InternalError",
                    "details": {},
                }
            },
        )

    # Include routers
    app.include_router(quote_router)
    app.include_router(payment_router)
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

    return app

