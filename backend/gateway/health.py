"""Health monitoring.

Provides detailed health checks for the application dependencies:
Redis and the score database.
"""

from __future__ import annotations

from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy import text

from app.logging_config import get_logger
from db.session import get_engine

logger = get_logger(__name__)


class HealthMonitor:
    """Monitors health of all application components."""

    def __init__(self, redis: Optional[aioredis.Redis]) -> None:
        self.redis = redis

    async def check_all(self) -> dict[str, Any]:
        """Run all health checks and return status."""
        redis_ok = await self._check_redis()
        db_ok = await self._check_database()

        # Redis only backs rate limits and caches; scoring works without it
        if not db_ok:
            status = "unhealthy"
        elif not redis_ok:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "checks": {
                "redis": {"status": "ok" if redis_ok else "error"},
                "database": {"status": "ok" if db_ok else "error"},
            },
        }

    async def _check_redis(self) -> bool:
        """Check Redis connectivity."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except Exception:
            logger.error("health_check_redis_failed")
            return False

    async def _check_database(self) -> bool:
        """Check database connectivity."""
        engine = get_engine()
        if engine is None:
            return False
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.error("health_check_database_failed")
            return False
