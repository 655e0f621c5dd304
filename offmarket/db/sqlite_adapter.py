"""
SQLite and PostgreSQL Database Adapters

This module implements the DatabaseAdapter interface for the two supported
backends. SQLite is the default for local development and tests; PostgreSQL
is used in production.

Key characteristics of SQLite:
- File-based (single .db file)
- No server required
- Single writer at a time (file locking)
"""

from typing import Any, Optional

from sqlalchemy.pool import NullPool

from offmarket.db.interface import DatabaseAdapter


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite database adapter implementation.

    Uses NullPool (file-based database, no pooling needed) and
    check_same_thread=False, which async SQLite requires.
    """

    def get_pool_class(self) -> type[NullPool]:
        return NullPool

    def get_connect_args(self) -> dict[str, Any]:
        return {
            "check_same_thread": False
        }

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {
            "echo": False  # Set to True only for SQL debugging in development
        }

    def get_dialect_name(self) -> str:
        return "sqlite"


class PostgreSQLAdapter(DatabaseAdapter):
    """PostgreSQL adapter (asyncpg driver) with SQLAlchemy's default queue pool."""

    def get_pool_class(self) -> Optional[type]:
        return None

    def get_connect_args(self) -> dict[str, Any]:
        return {}

    def get_engine_kwargs(self) -> dict[str, Any]:
        return {
            "echo": False,
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
        }

    def get_dialect_name(self) -> str:
        return "postgresql"


def get_database_adapter(database_url: str = "") -> DatabaseAdapter:
    """
    Factory function to get the database adapter for a connection string.

    Returns SQLiteAdapter unless the URL points at PostgreSQL.
    """
    if database_url.startswith("postgresql"):
        return PostgreSQLAdapter()
    return SQLiteAdapter()
