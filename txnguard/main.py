"""FastAPI application entry point for txnguard."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from txnguard.api.middleware.error_handler import (
    global_exception_handler,
    validation_exception_handler,
)
from txnguard.api.middleware.logging import StructuredLoggingMiddleware
from txnguard.api.routes.health import router as health_router
from txnguard.api.routes.history import router as history_router
from txnguard.api.routes.reports import router as reports_router
from txnguard.api.routes.reviews import router as reviews_router
from txnguard.api.routes.screening import router as screening_router
from txnguard.api.routes.users import router as users_router
from txnguard.config import settings
from txnguard.domains.screening.config import ScreeningConfig
from txnguard.domains.screening.service import build_engine, set_engine
from txnguard.shared.kafka_utils import close_producer, create_producer
from txnguard.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0

_kafka_producer = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME, _kafka_producer
    APP_START_TIME = time.time()
    setup_logging(settings.log_level)

    logger.info(
        "txnguard_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    if settings.database_enabled:
        from txnguard.db.database import init_db

        await init_db()

    if settings.kafka_enabled:
        try:
            _kafka_producer = await create_producer(settings.kafka_bootstrap_servers)
        except Exception:
            # The report sink reconnects on a later delivery; reports stay pending
            logger.warning("kafka_producer_failed_to_start", exc_info=True)
            _kafka_producer = None

    engine = build_engine(settings, ScreeningConfig.from_env(), kafka_producer=_kafka_producer)
    set_engine(engine)
    await engine.reporting.redeliver_pending()
    engine.reporting.start_redelivery()

    yield

    await engine.aclose()
    set_engine(None)
    await close_producer(_kafka_producer)
    _kafka_producer = None
    if settings.database_enabled:
        from txnguard.db.database import close_db

        await close_db()
    logger.info("txnguard_shutting_down")


app = FastAPI(
    title="txnguard",
    description="Transaction compliance and risk-screening engine",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Structured logging middleware
app.add_middleware(StructuredLoggingMiddleware)

# Exception handlers. ValueError and LookupError are registered on their own
# so they are answered inside the app instead of by the server error layer.
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ValueError, global_exception_handler)
app.add_exception_handler(LookupError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Register routers
app.include_router(health_router)
app.include_router(screening_router)
app.include_router(history_router)
app.include_router(users_router)
app.include_router(reviews_router)
app.include_router(reports_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)


def run() -> None:
    import uvicorn

    uvicorn.run(
        "txnguard.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
