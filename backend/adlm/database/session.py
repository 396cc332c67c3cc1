"""
Database session management.

A Database object owns the engine and session factory. The application
creates one in its lifespan, stores it on app.state.database and disposes it
at shutdown; there is no module-level engine singleton.

Usage:
    from adlm.database.session import get_db_session

    @router.get("/items")
    def get_items(db: Session = Depends(get_db_session)):
        ...
"""

import logging
from typing import Generator, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from adlm.db_base import Base

logger = logging.getLogger(__name__)


class Database:
    """Engine plus session factory with explicit init/teardown."""

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None):
        if engine is None:
            if not url:
                raise ValueError("Database URL is required")
            engine_kwargs = {"pool_pre_ping": True}
            if not url.startswith("sqlite"):
                engine_kwargs.update(pool_size=5, max_overflow=10, pool_recycle=1800)
            engine = create_engine(url, **engine_kwargs)
            logger.info("Database engine created", extra={"dialect": engine.dialect.name})
        self.engine = engine
        self.session_factory = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    def session(self) -> Session:
        return self.session_factory()

    def create_all(self) -> None:
        """Create every table. Used for local bootstrap and tests."""
        # Register all tables on the metadata before creating them
        import adlm.models  # noqa: F401
        import adlm.platform.audit  # noqa: F401

        Base.metadata.create_all(self.engine)

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()

    def dispose(self) -> None:
        self.engine.dispose()
        logger.info("Database engine disposed")


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )
    return database


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency that yields a request-scoped session.

    Rolls back anything left uncommitted when the request ends.
    """
    session = get_database(request).session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
