"""
Health Check Endpoints

Probes for load balancers and Kubernetes:
- /health: process answers
- /health/live: process answers, with uptime
- /health/ready: database, Redis (when it backs presence) and the presence
  registry itself are reachable; a worker that cannot claim agents must not
  receive webhooks
- /health/detailed: development-only dump with presence counts
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.config import settings
from app.core.routing.errors import PresenceBackendError
from app.core.routing.registry import get_presence_registry
from app.core.routing.types import PresenceStatistics
from app.infra.database import check_db_health
from app.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "1.0.0"

# Check values that do not make the service unready
PASSING = ("ok", "skipped")

_started_at: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def set_start_time() -> None:
    """Record startup time for uptime reporting."""
    global _started_at
    _started_at = _now()


def get_uptime_seconds() -> Optional[float]:
    if _started_at is None:
        return None
    return (_now() - _started_at).total_seconds()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    """Readiness with one entry per dependency."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


class DetailedHealthResponse(BaseModel):
    """Everything /health/ready checks plus presence counts and routing config."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float]
    checks: dict[str, str]
    config: dict[str, str]
    presence: dict[str, int]


async def _check_storage() -> dict[str, str]:
    """Database always; Redis only when it backs the presence registry."""
    checks = {}

    try:
        checks["database"] = "ok" if await check_db_health() else "failed"
    except Exception as e:
        checks["database"] = "error"
        logger.error(f"Health check: database error - {e}")

    if settings.presence_backend != "redis":
        checks["redis"] = "skipped"
        return checks

    try:
        checks["redis"] = "ok" if await check_redis_health() else "failed"
    except Exception as e:
        checks["redis"] = "error"
        logger.error(f"Health check: Redis error - {e}")

    return checks


async def _presence_statistics() -> tuple[str, Optional[PresenceStatistics]]:
    """Registry check result and, when it answered, its counts."""
    try:
        registry = await get_presence_registry()
        return "ok", await registry.get_statistics()
    except PresenceBackendError as e:
        logger.error(f"Health check: presence registry error - {e}")
        return "error", None


def _all_passing(checks: dict[str, str]) -> bool:
    return all(value in PASSING for value in checks.values())


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """Always 200 while the app runs; use /health/ready for dependencies."""
    return HealthResponse(
        status="healthy",
        timestamp=_now(),
        version=VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description=(
        "Checks the database, Redis and the presence registry. "
        "Returns 503 if any of them is unavailable."
    ),
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """Readiness probe. 503 until every dependency check passes."""
    checks = await _check_storage()
    checks["presence"], _ = await _presence_statistics()

    all_ok = _all_passing(checks)
    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=_now(),
        checks=checks,
    )

    if not all_ok:
        logger.warning(f"Readiness check failed: {checks}")
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
    description="Returns 200 if the process is alive. Used for container restart decisions.",
)
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=_now(),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/detailed",
    response_model=DetailedHealthResponse,
    summary="Detailed health check",
    description="Returns detailed system health. Only available in development.",
    include_in_schema=settings.is_development,
)
async def detailed() -> DetailedHealthResponse:
    """Dependency checks, presence counts and routing settings (development only)."""
    if not settings.is_development:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not found",
        )

    checks = await _check_storage()
    checks["presence"], stats = await _presence_statistics()

    presence = {}
    if stats is not None:
        presence = {
            "total_agents": stats.total_agents,
            "available_agents": stats.available_agents,
            "on_call_agents": stats.on_call_agents,
        }

    # No secrets here
    config = {
        "app_name": settings.app_name,
        "environment": settings.app_env,
        "debug": str(settings.debug),
        "presence_backend": settings.presence_backend,
        "default_queue": settings.routing_default_queue_id,
        "default_strategy": settings.routing_default_strategy,
        "ring_timeout_seconds": str(settings.ring_timeout_seconds),
        "signature_validation": str(settings.twilio_validate_signatures),
    }

    return DetailedHealthResponse(
        status="healthy" if _all_passing(checks) else "degraded",
        timestamp=_now(),
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=get_uptime_seconds(),
        checks=checks,
        config=config,
        presence=presence,
    )
