"""Health check endpoints for Kubernetes probes."""

from datetime import UTC, datetime

import httpx
import redis.asyncio as redis
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from src.core.config import get_settings
from src.rag.uploads import get_upload_arena
from src.storage.blob_store import get_blob_store

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str
    checks: dict | None = None


# Startup state
_startup_complete = False


def set_startup_complete(value: bool = True) -> None:
    global _startup_complete
    _startup_complete = value


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def check_qdrant() -> tuple[bool, str]:
    """Qdrant holds the vectors; queries and background writes need it."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(f"{settings.qdrant_url}/readyz", timeout=5.0)
    except httpx.HTTPError as e:
        return False, f"unhealthy: {e!s}"
    if response.status_code == 200:
        return True, "healthy"
    return False, f"unhealthy: status {response.status_code}"


async def check_blob_store() -> tuple[bool, str]:
    if await get_blob_store().is_available():
        return True, "healthy"
    return False, "unhealthy: bucket check failed"


async def check_redis() -> tuple[bool, str]:
    """Redis only backs the embedding cache."""
    settings = get_settings()
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await client.ping()
    except redis.RedisError as e:
        return False, f"unhealthy: {e!s}"
    finally:
        await client.aclose()
    return True, "healthy"


@router.get("/health/live", response_model=HealthResponse)
async def liveness():
    """Kubernetes liveness probe. 200 while the process is alive."""
    return HealthResponse(status="alive", timestamp=_now(), version=get_settings().app_version)


@router.get("/health/ready", response_model=HealthResponse)
async def readiness():
    """Kubernetes readiness probe.

    Fails when Qdrant or blob storage is down. Redis is reported but not
    required since embeddings work without the cache.
    """
    settings = get_settings()

    qdrant_ok, qdrant_status = await check_qdrant()
    blob_ok, blob_status = await check_blob_store()
    _redis_ok, redis_status = await check_redis()
    checks = {
        "qdrant": qdrant_status,
        "blob_store": blob_status,
        "redis": redis_status,
        "upload_sessions": len(get_upload_arena()),
    }

    if not (qdrant_ok and blob_ok):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "checks": checks},
        )

    return HealthResponse(
        status="ready", timestamp=_now(), version=settings.app_version, checks=checks
    )


@router.get("/health/startup", response_model=HealthResponse)
async def startup():
    """Kubernetes startup probe. 200 once the lifespan startup has run."""
    if not _startup_complete:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "starting", "message": "Initialization in progress"},
        )

    return HealthResponse(status="started", timestamp=_now(), version=get_settings().app_version)
