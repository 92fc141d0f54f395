"""
Health Check Endpoints

Liveness and readiness probes. Readiness covers the relational store that
holds bookings and the event ledger, and Redis, which backs conversation
state (the service keeps running without Redis, but only on one worker).
"""

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from quickbook.config import settings
from quickbook.infra.database import check_db_health
from quickbook.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

APP_VERSION = "0.1.0"

# Track application start time for uptime calculation
_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


async def _probe(name: str, check: Callable[[], Awaitable[bool]]) -> str:
    """Run one dependency check, mapping failures to a status word."""
    try:
        ok = await check()
    except Exception as e:
        logger.error(f"Readiness check: {name} error - {e}")
        return "error"
    if not ok:
        logger.warning(f"Readiness check: {name} unhealthy")
        return "failed"
    return "ok"


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """Basic health check."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=APP_VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Checks database and Redis connectivity. Returns 503 if the database is down.",
    responses={
        200: {"description": "Ready to take events"},
        503: {"description": "Database unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    The database is required: without the ledger no event can be admitted.
    Redis only degrades the service, so it is reported but does not fail
    the probe.
    """
    checks = {
        "database": await _probe("database", check_db_health),
        "redis": await _probe("redis", check_redis_health),
    }
    ready_ok = checks["database"] == "ok"

    response = ReadyResponse(
        status="ready" if ready_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not ready_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Returns 200 if the process is alive.",
)
async def live() -> LiveResponse:
    """Liveness probe."""
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
