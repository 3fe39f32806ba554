"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Stripe API reachability
- Blob store reachability
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict

import structlog

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Stripe API reachability check
    - Blob store reachability check
    - Overall system health status
    """

    def __init__(self, container: Any, timeout: float = 5.0) -> None:
        """
        Initialize health check service.

        Args:
            container: Service container holding the database, provider and blob store
            timeout: Upper bound for each individual check, in seconds
        """
        self.container = container
        self.timeout = timeout

    async def _probe(self, service: str, probe: Callable[[], Awaitable[Any]]) -> Dict[str, Any]:
        try:
            await asyncio.wait_for(probe(), timeout=self.timeout)
        except Exception as e:
            logger.error(f"{service}_health_check_failed", error=str(e))
            raise HealthCheckError(f"{service} health check failed: {e}") from e
        return {"status": "healthy", "service": service}

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        result = await self._probe("database", self.container.database.ping)
        result["message"] = "Database connection successful"
        return result

    async def check_payment_provider(self) -> Dict[str, Any]:
        """
        Check Stripe API reachability.

        Raises:
            HealthCheckError: If Stripe check fails
        """
        result = await self._probe("stripe", self.container.provider.ping)
        result["test_mode"] = self.container.settings.is_test_mode
        return result

    async def check_blob_store(self) -> Dict[str, Any]:
        """
        Check blob store reachability.

        Raises:
            HealthCheckError: If the bucket cannot be reached
        """
        return await self._probe("blob_store", self.container.blob_store.ping)

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("stripe", self.check_payment_provider),
            ("blob_store", self.check_blob_store),
        ):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Only the database gates readiness: downloads and webhooks cannot be
        served without it, while Stripe and the blob store degrade single
        routes.

        Returns:
            Dict[str, Any]: Readiness status
        """
        try:
            database = await self.check_database()
        except HealthCheckError as e:
            return {"status": "not_ready", "checks": {"database": {"status": "unhealthy", "error": str(e)}}}
        return {"status": "ready", "checks": {"database": database}}
