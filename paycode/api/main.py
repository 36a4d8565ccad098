"""
Main FastAPI application.

Payment-code wallet API with:
- CORS configuration
- Structured error envelope
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from paycode import __version__
from paycode.config import Settings, get_settings
from paycode.core.locking import RedisKeyedLock
from paycode.core.services import build_services
from paycode.database.connection import (
    build_session_factory,
    create_engine_from_settings,
    init_db,
)
from paycode.monitoring.logging import setup_logging

from .errors import register_exception_handlers
from .routes import (
    account_router,
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def build_lifespan(settings: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Startup creates tables, wires services and funds the bank on first
        run. Shutdown releases the lock backend and database connections.
        """
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            lock_backend=settings.lock_backend,
        )

        engine = create_engine_from_settings(settings)
        try:
            await init_db(engine)
            services = build_services(build_session_factory(engine), settings)
            await services.bootstrap()
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            await engine.dispose()
            raise
        app.state.services = services
        logger.info("database_initialized")

        yield

        logger.info("application_shutdown")
        if isinstance(services.locks, RedisKeyedLock):
            await services.locks.close()
        await engine.dispose()
        logger.info("database_connections_closed")

    return lifespan


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings, defaults to environment configuration

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Paycode Wallet API",
        description=(
            "Merchant-presented payment codes settled from prepaid wallets. "
            "Features: atomic settlement, exactly-once payment per code, "
            "lazy code expiry, bank-funded recharges and ledger reconciliation."
        ),
        version=__version__,
        lifespan=build_lifespan(settings),
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )

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

        An inbound X-Request-ID is reused so callers can correlate retries.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
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

    register_exception_handlers(app)

    app.include_router(order_router)
    app.include_router(payment_router)
    app.include_router(account_router)
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
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    uvicorn.run(
        "paycode.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
