"""
Health checks.

Provides:
- Database connectivity (SELECT 1 through the app's Database)
- Configuration status reporting (never secret values)
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from adlm.config.settings import Settings
from adlm.database.session import Database
from adlm.models.base import utcnow

logger = logging.getLogger(__name__)

SERVICE_NAME = "adlm-studio-api"


class HealthChecker:
    """Health check service bound to the application's database and settings."""

    def __init__(self, database: Optional[Database], settings: Optional[Settings] = None):
        self.database = database
        self.settings = settings

    def check_database(self) -> dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict with 'status' (ok/error) and 'message'
        """
        if self.database is None:
            return {"status": "error", "message": "Database not configured"}

        try:
            self.database.ping()
        except SQLAlchemyError as e:
            logger.error("Database connection failed", extra={"error": str(e)})
            return {"status": "error", "message": "Database connection failed"}
        return {"status": "ok", "message": "Database connection successful"}

    def check_configuration(self) -> dict[str, Any]:
        settings = self.settings
        return {
            "status": "ok" if settings is not None else "error",
            "paystack_configured": bool(settings and settings.paystack_enabled),
            "database_configured": bool(settings and settings.database_url) or self.database is not None,
        }

    def get_health_status(self) -> dict[str, Any]:
        """
        Get comprehensive health status.

        Returns:
            Dict with overall status and component checks
        """
        db_check = self.check_database()
        config_check = self.check_configuration()

        overall_status = "ok"
        if db_check["status"] != "ok" or config_check["status"] != "ok":
            overall_status = "degraded"

        return {
            "status": overall_status,
            "timestamp": utcnow().isoformat(),
            "service": SERVICE_NAME,
            "checks": {
                "database": db_check,
                "configuration": config_check,
            },
        }

    def log_config_status(self) -> None:
        """Log configuration status on startup (no secrets)."""
        config_check = self.check_configuration()
        logger.info("Configuration status", extra=config_check)
        if not config_check["paystack_configured"]:
            logger.warning("PAYSTACK_SECRET_KEY not set; checkouts fall back to manual approval")
