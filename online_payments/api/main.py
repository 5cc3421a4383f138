"""
Main FastAPI application.

Payment processing API with:
- Error envelope for every failure
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from online_payments import __version__
from online_payments.config import Settings, get_settings
from online_payments.core.errors import (
    APIError,
    ErrorCode,
    InternalServerError,
    InvalidRequestError,
)
from online_payments.core.payment_processor import PaymentProcessor
from online_payments.core.reconciler import EventReconciler
from online_payments.database.connection import close_db, get_session_factory, init_db
from online_payments.database.store import SQLTransactionStore
from online_payments.integrations.providers import build_provider_registry, event_tables
from online_payments.integrations.webhook_handler import WebhookHandler
from online_payments.monitoring.health import HealthCheck
from online_payments.monitoring.logging import setup_logging

from .routes import monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


async def _wire_services(app: FastAPI, settings: Settings) -> Optional[aioredis.Redis]:
    """Create the services that were not injected into ``create_app``."""
    await init_db(settings)
    logger.info("database_initialized")

    session_factory = get_session_factory(settings)
    store = SQLTransactionStore(session_factory)
    registry = build_provider_registry(settings)

    redis_client: Optional[aioredis.Redis] = None
    if settings.redis_url:
        redis_client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    if getattr(app.state, "payment_processor", None) is None:
        app.state.payment_processor = PaymentProcessor(store, registry, debug=settings.debug)
    if getattr(app.state, "webhook_handler", None) is None:
        app.state.webhook_handler = WebhookHandler(
            registry,
            EventReconciler(store, event_tables(registry), debug=settings.debug),
            redis_client=redis_client,
            dedup_ttl_seconds=settings.webhook_dedup_ttl_seconds,
        )
    if getattr(app.state, "health_check", None) is None:
        app.state.health_check = HealthCheck(session_factory, redis_client)

    return redis_client


def _services_injected(app: FastAPI) -> bool:
    return all(
        getattr(app.state, name, None) is not None
        for name in ("payment_processor", "webhook_handler", "health_check")
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    payment_processor: Optional[PaymentProcessor] = None,
    webhook_handler: Optional[WebhookHandler] = None,
    health_check: Optional[HealthCheck] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Services passed in are used as-is; the rest are created on startup
    from ``settings``.
    """
    settings = settings or get_settings()
    setup_logging(settings)

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

        redis_client: Optional[aioredis.Redis] = None
        owns_database = not _services_injected(app)
        if owns_database:
            try:
                redis_client = await _wire_services(app, settings)
            except Exception as e:
                logger.error("application_startup_failed", error=str(e))
                raise

        yield

        logger.info("application_shutdown")
        if redis_client is not None:
            await redis_client.aclose()
        if owns_database:
            await close_db()
            logger.info("database_connections_closed")

    app = FastAPI(
        title="Online Payments",
        description=(
            "Payment processing service with Stripe integration. "
            "Charges, queries and refunds transactions and reconciles them "
            "with provider webhooks."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings
    app.state.payment_processor = payment_processor
    app.state.webhook_handler = webhook_handler
    app.state.health_check = health_check

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

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "api_error",
            code=exc.code.value,
            status_code=exc.status_code,
            reason=str(exc.reason) if exc.reason is not None else None,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        )
        error = InvalidRequestError(ValueError(details))
        logger.info("request_validation_failed", errors=details, path=request.url.path)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 404:
            code = ErrorCode.RESOURCE_NOT_FOUND
        elif exc.status_code < 500:
            code = ErrorCode.INVALID_REQUEST
        else:
            code = ErrorCode.INTERNAL_SERVER_ERROR
        return JSONResponse(
            status_code=exc.status_code,
            content={"code": code.value, "status_code": exc.status_code, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
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
        error = InternalServerError(exc, debug=settings.debug)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    app.include_router(payment_router)
    app.include_router(webhook_router)
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


def run() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "online_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
