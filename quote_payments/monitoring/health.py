"""
Health checks for readiness and liveness checks.

Checks:
- Database connectivity (skipped for the in-memory store)
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the persistence dependency."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        """
        Initialize health check service.

        Args:
            session_factory: SQL session factory, None when running in memory
        """
        self.session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        if self.session_factory is None:
            return {
                "status": "healthy",
                "service": "database",
                "message": "In-memory store",
            }

        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def liveness(self) -> Dict[str, Any]:
        """Liveness check: the process is running. No dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }
