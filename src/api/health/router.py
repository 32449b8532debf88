"""Liveness and readiness endpoints."""

import redis.asyncio as redis
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.api.core.dependencies import AsyncSessionDep
from src.modules.health.service import HealthService, OverallHealthStatus
from src.redis.client import get_redis_client

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/", response_model=OverallHealthStatus)
async def health_check(
    db: AsyncSessionDep,
    redis: redis.Redis = Depends(get_redis_client),
):
    """Database and Redis status. Returns 503 when the database is down."""
    result = await HealthService(db, redis).run_all_checks()
    if result.status == "unhealthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": result.status,
                "timestamp": result.timestamp,
                "services": {
                    name: {
                        "status": check.status,
                        "connected": check.connected,
                        "error": check.error,
                    }
                    for name, check in result.services.items()
                },
            },
        )
    return result


@router.get("/liveness")
async def liveness_check():
    return {"status": "alive", "service": "credit-ledger"}
