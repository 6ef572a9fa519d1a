"""TrustLedger FastAPI application entry point.

Creates the FastAPI app, configures middleware, includes routers, and
manages the lifecycle of the compliance services (ledger, audit
recorder, compliance scanner, erasure workflow, SCA, Wwft, jobs).
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config.settings import settings
from src.api.router import api_router
from src.middleware.privacy import PrivacyMiddleware
from src.services.container import build_services

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Structured logging configuration
# ---------------------------------------------------------------------------


def _configure_logging() -> None:
    """Set up structlog with JSON or console rendering based on settings."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.processors.NAME_TO_LEVEL[settings.log_level.lower()],
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Application lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of the TrustLedger services.

    On startup:
      1. Build the service graph (ledger, index, stores, engines)
      2. Store every service on ``app.state`` for the route helpers
      3. Start the background job loop in development

    On shutdown:
      - Stop the job loop.
      - Close the ledger connection pool and screening HTTP client.
    """
    _configure_logging()
    logger.info(
        "app.startup",
        env=settings.env,
        ledger_backend=settings.ledger_backend,
    )

    app.state.start_time = time.time()

    # -- 1. Service graph ---------------------------------------------------
    services = build_services(settings)
    app.state.services = services
    app.state.ledger = services.ledger
    app.state.index = services.index
    app.state.entities = services.entities
    app.state.retention = services.retention
    app.state.recorder = services.recorder
    app.state.scanner = services.scanner
    app.state.erasure = services.erasure
    app.state.gdpr = services.gdpr
    app.state.sca = services.sca
    app.state.wwft = services.wwft
    app.state.jobs = services.jobs
    logger.info("app.services_initialised")

    # -- 2. Background jobs -------------------------------------------------
    # Production relies on an external scheduler calling /api/v1/jobs.
    if not settings.is_production and settings.enable_auto_jobs:
        services.jobs.start()
        logger.info("app.job_scheduler_started")

    logger.info("app.startup_complete")

    yield

    # -- Shutdown -----------------------------------------------------------
    logger.info("app.shutdown_start")

    await services.jobs.stop()
    await services.close()

    logger.info("app.shutdown_complete")


# ---------------------------------------------------------------------------
# FastAPI application
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TrustLedger API",
    description=(
        "TrustLedger -- tamper-evident audit trail and statutory compliance "
        "services for Dutch financial software: AVG/GDPR erasure, PSD2 strong "
        "customer authentication and Wwft customer due diligence."
    ),
    version="0.1.0",
    lifespan=lifespan,
    default_response_class=ORJSONResponse,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

# -- CORS middleware --------------------------------------------------------
# allow_credentials=True must not be combined with allow_origins=["*"].
if settings.is_production:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Actor-Id", "X-Session-Id", "X-Admin-API-Key"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:8000", "http://127.0.0.1:8000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS", "HEAD"],
        allow_headers=["Content-Type", "Accept", "Authorization", "X-Actor-Id", "X-Session-Id", "X-Admin-API-Key"],
    )

# -- Custom middleware ------------------------------------------------------
app.add_middleware(PrivacyMiddleware)

# -- Prometheus metrics -----------------------------------------------------
# Scraped inside the cluster; hidden from the public schema in production.
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/api/v1/health"],
).instrument(app).expose(
    app,
    endpoint="/metrics",
    include_in_schema=not settings.is_production,
)

# -- Include routers -------------------------------------------------------
app.include_router(api_router)


@app.get("/api", response_class=ORJSONResponse)
async def api_info() -> dict:
    """API information endpoint."""
    return {
        "name": "TrustLedger API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/v1/health",
        "ledger_backend": settings.ledger_backend,
    }
