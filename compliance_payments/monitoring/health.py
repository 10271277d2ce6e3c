"""
Health check endpoints for Kubernetes readiness and liveness checks.

Checks:
- Database connectivity
- Redis connectivity (only when the Redis rate limiter is in use)
- Paystack API reachability
"""
from typing import Any, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from compliance_payments.config import Settings, get_settings
from compliance_payments.database.connection import get_session_factory
from compliance_payments.integrations.paystack_client import PaystackClient, PaystackError

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Paystack API reachability check
    - Overall system health status
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        paystack_client: Optional[PaystackClient] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ) -> None:
        """Initialize health check service."""
        self.settings = settings or get_settings()
        self.paystack_client = paystack_client
        self.session_factory = session_factory

    @property
    def uses_redis(self) -> bool:
        return self.settings.rate_limit_backend == "redis"

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Returns:
            Dict[str, Any]: Redis health status

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: aioredis.Redis | None = None
        try:
            redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()

            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }

        except (aioredis.RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")

        finally:
            if redis_client:
                await redis_client.aclose()

    async def check_paystack(self) -> Dict[str, Any]:
        """
        Check Paystack API reachability and that it accepts our key.

        Returns:
            Dict[str, Any]: Paystack health status

        Raises:
            HealthCheckError: If Paystack check fails
        """
        client = self.paystack_client or PaystackClient(self.settings)
        try:
            await client.ping()

            return {
                "status": "healthy",
                "service": "paystack",
                "message": "Paystack API connection successful",
                "test_mode": self.settings.is_test_mode,
            }

        except PaystackError as e:
            logger.error("paystack_health_check_failed", error=str(e))
            raise HealthCheckError(f"Paystack health check failed: {str(e)}")

        finally:
            if self.paystack_client is None:
                await client.close()

    async def _run(self, name: str, check: Callable[[], Any]) -> Dict[str, Any]:
        try:
            return await check()
        except HealthCheckError as e:
            return {"status": "unhealthy", "service": name, "error": str(e)}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {"database": await self._run("database", self.check_database)}
        if self.uses_redis:
            checks["redis"] = await self._run("redis", self.check_redis)
        checks["paystack"] = await self._run("paystack", self.check_paystack)

        all_healthy = all(check["status"] == "healthy" for check in checks.values())
        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness check endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check endpoint.

        Only local dependencies gate traffic; a Paystack outage should not
        take the webhook endpoint out of rotation.

        Returns:
            Dict[str, Any]: Readiness status
        """
        checks = {"database": await self._run("database", self.check_database)}
        if self.uses_redis:
            checks["redis"] = await self._run("redis", self.check_redis)

        ready = all(check["status"] == "healthy" for check in checks.values())
        return {
            "status": "ready" if ready else "not_ready",
            "checks": checks,
        }
