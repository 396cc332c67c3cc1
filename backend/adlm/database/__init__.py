"""Database engine and session management."""

from adlm.database.session import Database, get_db_session

__all__ = ["Database", "get_db_session"]
