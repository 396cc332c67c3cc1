"""
FastAPI application entry point for ADLM Studio.

create_app() builds the application around an explicit Settings object and
Database; both live on app.state for the lifetime of the app. Tests pass
their own settings and database; production builds them from the
environment in the lifespan.

Run with:
    uvicorn adlm.main:app
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from adlm import __version__
from adlm.api.routes import (
    admin_ptrainings,
    admin_purchases,
    admin_users,
    auth,
    coupons,
    entitlements,
    health,
    me,
    products,
    ptrainings,
    purchases,
    webhooks_paystack,
)
from adlm.config.settings import Settings
from adlm.database.session import Database
from adlm.platform.errors import register_error_handlers
from adlm.platform.health import HealthChecker

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Runtime configuration; read from the environment at startup when omitted
        database: Database context; built from settings.database_url when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_settings = app.state.settings or Settings.from_env()
        app.state.settings = app_settings
        configure_logging(app_settings.log_level)
        logger.info("Starting ADLM Studio API", extra={"version": __version__})

        owns_database = app.state.database is None
        if owns_database:
            if app_settings.database_url:
                app.state.database = Database(app_settings.database_url)
            else:
                logger.error("DATABASE_URL is not set. Database-backed endpoints will return 503.")

        HealthChecker(app.state.database, app_settings).log_config_status()

        yield

        if owns_database and app.state.database is not None:
            app.state.database.dispose()
        logger.info("Shutting down ADLM Studio API")

    app = FastAPI(
        title="ADLM Studio API",
        description="Licensing backend: entitlements, device seats, purchases and trainings",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.rate_limiter = None

    cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # Health (no authentication)
    app.include_router(health.router)

    # Accounts and caller-scoped reads
    app.include_router(auth.router)
    app.include_router(me.router)

    # Entitlements and device seats
    app.include_router(entitlements.router)
    app.include_router(products.router)

    # Checkout, payment and coupons
    app.include_router(purchases.router)
    app.include_router(coupons.router)

    # Paystack webhook (HMAC verification, no bearer token)
    app.include_router(webhooks_paystack.router)

    # Trainings
    app.include_router(ptrainings.router)

    # Admin
    app.include_router(admin_users.router)
    app.include_router(admin_purchases.router)
    app.include_router(admin_ptrainings.router)

    return app


app = create_app()
