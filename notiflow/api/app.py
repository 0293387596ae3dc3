"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from notiflow.api.routes import ab_tests, analytics, notifications, schedules, templates, users
from notiflow.core.config import get_settings
from notiflow.core.errors import MissingVariableError, NotiflowError, RateLimitExceeded
from notiflow.core.logging import get_logger, setup_logging
from notiflow.notification.channels.base import channels_by_type
from notiflow.notification.channels.email import EmailChannel
from notiflow.notification.channels.push import PushChannel
from notiflow.notification.orchestrator import NotificationOrchestrator, create_orchestrator
from notiflow.storage.redis_client import close_redis_pool, get_redis, init_redis_pool

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager."""
    settings = get_settings()

    # Startup
    setup_logging()
    logger.info("Starting application", app_name=settings.app_name, version=settings.app_version)

    owns_orchestrator = getattr(app.state, "orchestrator", None) is None
    if owns_orchestrator:
        await init_redis_pool()
        logger.info("Redis connection pool initialized")
        app.state.orchestrator = create_orchestrator(
            get_redis(),
            channels=channels_by_type(EmailChannel(settings), PushChannel(settings=settings)),
            settings=settings,
        )

    yield

    # Shutdown
    logger.info("Shutting down application")
    if owns_orchestrator:
        await app.state.orchestrator.close()
        await close_redis_pool()
        logger.info("Redis connection pool closed")


def _error_data(exc: NotiflowError) -> dict | None:
    if isinstance(exc, RateLimitExceeded) and exc.next_allowed_at:
        return {"next_allowed_at": exc.next_allowed_at.isoformat()}
    if isinstance(exc, MissingVariableError):
        return {"variables": exc.variables}
    return None


def create_app(orchestrator: NotificationOrchestrator | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        orchestrator: Prebuilt orchestrator; when omitted one is wired to the
            shared Redis pool at startup
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Notification delivery and scheduling engine",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    for module in (notifications, schedules, ab_tests, templates, users, analytics):
        app.include_router(module.router, prefix="/api/v1")

    app.mount("/metrics", make_asgi_app())

    # Error response handlers
    @app.exception_handler(NotiflowError)
    async def notiflow_exception_handler(request: Request, exc: NotiflowError) -> JSONResponse:
        logger.info(
            "Request rejected",
            path=request.url.path,
            error=type(exc).__name__,
            message=exc.message,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.status_code,
                "message": exc.message,
                "data": _error_data(exc),
            },
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        detail = exc.detail
        content = {
            "code": exc.status_code,
            "message": detail if isinstance(detail, str) else "HTTP error",
            "data": None if isinstance(detail, str) else detail,
        }
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={
                "code": 422,
                "message": "Validation error",
                "data": jsonable_encoder(exc.errors()),
            },
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=500,
            content={
                "code": 500,
                "message": "Internal server error",
                "data": str(exc) if settings.debug else None,
            },
        )

    # Health check endpoint
    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "version": settings.app_version}

    return app


# Application instance for uvicorn
app = create_app()
