"""
Health and readiness probes.

Only the order store gates readiness: without it no order can be written.
Gateways and mail report "degraded" when unconfigured, because the other
gateways keep working and a missing mailer only delays notifications.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


def _configuration_check(service: str, configured: bool, **details: Any) -> Dict[str, Any]:
    return {
        "status": "healthy" if configured else "degraded",
        "service": service,
        "configured": configured,
        **details,
    }


class HealthCheck:
    """
    Probes the order store and reports gateway and mail configuration.

    Args:
        settings: Service settings
        session_factory: Session factory to probe; the process-wide one by default
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        session_factory = self._session_factory or get_session_factory()
        try:
            async with session_factory() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("order_store_unreachable", error=str(e))
            return {"status": "unhealthy", "service": "database", "error": str(e)}
        return {"status": "healthy", "service": "database"}

    async def check_mail(self) -> Dict[str, Any]:
        return _configuration_check(
            "mail",
            self.settings.smtp_configured,
            business_recipient=bool(self.settings.business_email),
        )

    async def check_stripe(self) -> Dict[str, Any]:
        return _configuration_check(
            "stripe",
            self.settings.stripe_configured,
            test_mode=self.settings.is_test_mode,
            webhook_secret=bool(self.settings.stripe_webhook_secret),
        )

    async def check_paypal(self) -> Dict[str, Any]:
        return _configuration_check(
            "paypal",
            bool(self.settings.paypal_client_id and self.settings.paypal_secret),
            environment=self.settings.paypal_environment,
        )

    async def check_all(self) -> Dict[str, Any]:
        """Overall status follows the database; the rest is informational."""
        checks = {
            "database": await self.check_database(),
            "mail": await self.check_mail(),
            "stripe": await self.check_stripe(),
            "paypal": await self.check_paypal(),
        }
        return {"status": checks["database"]["status"], "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        return {"status": "alive"}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
