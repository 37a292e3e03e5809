"""
FastAPI application main entry point.
"""

import time
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI

from subject_lookup import __version__
from subject_lookup.core.config import Config, get_config, init_config
from subject_lookup.core.logging_config import configure_structlog
from subject_lookup.core.sentry_config import init_sentry
from subject_lookup.api.middleware.logging import LoggingMiddleware
from subject_lookup.api.middleware.metrics import MetricsMiddleware
from subject_lookup.api.middleware.request_context import RequestContextMiddleware
from subject_lookup.api.errors.handlers import register_exception_handlers
from subject_lookup.api.routers import health, lookup, relatives, system
from subject_lookup.services.registry import LookupServices

logger = logging.getLogger(__name__)

ServicesFactory = Callable[[Config], LookupServices]


def _load_config() -> Config:
    try:
        return get_config()
    except RuntimeError:
        return init_config()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events.
    """
    config: Config = app.state.config
    logger.info("Starting subject lookup gateway")
    logger.info(f"Environment: {config.environment}")
    logger.info(f"API running on {config.api.host}:{config.api.port}")

    services = app.state.services_factory(config)
    await services.start()
    app.state.services = services
    app.state.started_at = time.time()

    yield

    logger.info("Shutting down subject lookup gateway")
    app.state.services = None
    await services.stop()


def create_app(
    config: Optional[Config] = None,
    services_factory: ServicesFactory = LookupServices.from_config
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Configuration (the global one when omitted)
        services_factory: Builds the lookup services at startup

    Returns:
        Configured FastAPI application instance
    """
    config = config or _load_config()

    configure_structlog(
        log_level=config.monitoring.log_level,
        json_logs=(config.monitoring.log_format == 'json'),
        development_mode=(config.environment == 'development')
    )

    if config.monitoring.sentry_dsn:
        init_sentry(
            dsn=config.monitoring.sentry_dsn,
            environment=config.environment,
            release=__version__,
            traces_sample_rate=0.1 if config.environment == 'production' else 1.0,
            enable_tracing=True
        )

    app = FastAPI(
        title="Subject Lookup Gateway",
        description=(
            "Looks up subject records in the portal through one shared, "
            "kept-alive browser session."
        ),
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Lookup", "description": "Subject lookups"},
            {"name": "System", "description": "Session and pool status and control"},
            {"name": "Relatives", "description": "Relatives diagnostics and cache administration"},
            {"name": "Health", "description": "System health and monitoring"},
        ]
    )
    app.state.config = config
    app.state.services_factory = services_factory
    app.state.services = None
    app.state.started_at = None

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(LoggingMiddleware)
    if config.monitoring.enable_metrics:
        app.add_middleware(MetricsMiddleware)

    app.include_router(lookup.router, tags=["Lookup"])
    app.include_router(system.router, tags=["System"])
    app.include_router(relatives.router, tags=["Relatives"])
    app.include_router(health.router, tags=["Health"])

    register_exception_handlers(app)

    logger.info("FastAPI application created successfully")
    return app
