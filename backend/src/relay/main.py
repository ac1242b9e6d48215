"""FastAPI application entry-point.

Builds the relay app: middleware, error mapping, versioned routers, and a
lifespan that owns the process-wide fallback chain.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from relay.adapters.inbound.rest.routers import (
    chat_router,
    health_router,
    providers_router,
)
from relay.config import Settings, get_settings
from relay.dependencies import close_container, get_chain
from relay.shared.errors import register_exception_handlers
from relay.shared.middleware import (
    LoggingMiddleware,
    MetricsMiddleware,
    RequestIdMiddleware,
)
from relay.shared.observability import configure_logging

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Configure logging, build the chain eagerly, release its clients on shutdown."""
    settings: Settings = app.state.settings
    configure_logging(log_level=settings.log_level, json_logs=settings.is_production)

    chain = get_chain(settings)
    logger.info(
        "application_starting",
        app=settings.app_name,
        env=settings.app_env.value,
        healthy_providers=sorted(pid for pid, ok in chain.get_provider_health().items() if ok),
    )

    yield

    await close_container()
    logger.info("application_shutdown")


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    # Last added = outermost: RequestId wraps Logging wraps Metrics wraps CORS.
    allow_all = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all else settings.cors_origins,
        allow_origin_regex=".*" if allow_all else None,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory — creates a fully configured FastAPI instance."""
    settings = settings or get_settings()

    app = FastAPI(
        title="LLM Relay",
        description=(
            "Resilient gateway in front of several hosted language-model providers. "
            "Retries with backoff, per-provider circuit breakers and rate limits, "
            "and automatic fallback to the next configured provider."
        ),
        version="0.1.0",
        debug=settings.app_debug,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings

    _add_middleware(app, settings)
    register_exception_handlers(app)

    for router in (health_router, chat_router, providers_router):
        app.include_router(router, prefix=API_PREFIX)

    return app


def run() -> None:
    """Console entry-point: serve the app with uvicorn using configured host/port."""
    settings = get_settings()
    uvicorn.run(
        "relay.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_debug,
        log_config=None,
    )


# Uvicorn entry-point
app = create_app()
