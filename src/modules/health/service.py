import asyncio
from dataclasses import dataclass
from typing import Literal

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.database.models import CostThrottleCounter, utcnow
from src.redis.client import redis_key
from src.utils.logger import get_logger

logger = get_logger(__name__)

HealthState = Literal["healthy", "degraded", "unhealthy"]


@dataclass
class HealthCheckResult:
    service: str
    status: HealthState
    connected: bool
    details: dict
    error: str | None = None


@dataclass
class OverallHealthStatus:
    status: HealthState
    services: dict[str, HealthCheckResult]
    timestamp: str


class HealthService:
    """Dependency checks for the readiness endpoint."""

    def __init__(self, db: AsyncSession, redis: redis.Redis):
        self.db = db
        self.redis = redis

    async def check_database_health(self) -> HealthCheckResult:
        try:
            await self.db.execute(text("SELECT 1"))
            throttled = await self.db.scalar(
                select(func.count())
                .select_from(CostThrottleCounter)
                .where(CostThrottleCounter.is_throttled.is_(True))
            )
            return HealthCheckResult(
                service="database",
                status="healthy",
                connected=True,
                details={"throttled_accounts": throttled or 0},
            )
        except SQLAlchemyError as e:
            logger.error("Database health check failed", error=str(e))
            return HealthCheckResult(
                service="database",
                status="unhealthy",
                connected=False,
                details={},
                error=str(e),
            )

    async def check_redis_health(self) -> HealthCheckResult:
        # Redis only backs the rotation marker, so losing it degrades service
        try:
            key = redis_key("health_check")
            await self.redis.ping()
            await self.redis.setex(key, 10, "ok")
            cached = await self.redis.get(key)
            await self.redis.delete(key)
            return HealthCheckResult(
                service="redis",
                status="healthy",
                connected=True,
                details={"roundtrip_ok": cached is not None},
            )
        except (RedisError, OSError) as e:
            logger.warning("Redis health check failed", error=str(e))
            return HealthCheckResult(
                service="redis",
                status="degraded",
                connected=False,
                details={},
                error=str(e),
            )

    async def run_all_checks(self) -> OverallHealthStatus:
        results = await asyncio.gather(
            self.check_database_health(), self.check_redis_health()
        )

        overall: HealthState = "healthy"
        for result in results:
            if result.status == "unhealthy":
                overall = "unhealthy"
            elif result.status == "degraded" and overall == "healthy":
                overall = "degraded"

        return OverallHealthStatus(
            status=overall,
            services={result.service: result for result in results},
            timestamp=utcnow().isoformat(),
        )
