"""Health and readiness endpoints."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from txnguard.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from txnguard.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready() -> JSONResponse:
    """Ready when every enabled backing service answers."""
    db_ok: bool | None = None
    kafka_ok: bool | None = None

    if settings.database_enabled:
        from txnguard.db.database import check_db

        db_ok = await check_db()

    if settings.kafka_enabled:
        from txnguard.domains.screening.service import get_engine

        # The report sink holds the producer once it has connected
        kafka_ok = getattr(get_engine().reporting.sink, "producer", None) is not None

    all_ready = db_ok is not False and kafka_ok is not False
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "database": db_ok,
            "kafka": kafka_ok,
        },
    )
