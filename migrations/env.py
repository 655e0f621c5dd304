"""
Alembic Environment Configuration

Runs the off-market schema migrations against settings.DATABASE_URL:
- SQLite runs through a sync engine (aiosqlite URLs are rewritten to pysqlite)
- Other databases run through the async engine with the configured driver
- All models are imported so autogenerate sees every table
"""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from offmarket.core.setting import settings
from offmarket.db import models  # noqa: F401  (registers tables for autogenerate)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata


def sync_sqlite_url(database_url: str) -> str:
    """
    sqlite+aiosqlite:///./offmarket.db -> sqlite:///./offmarket.db

    The two-slash relative form (sqlite+aiosqlite://./x.db) is normalised too.
    """
    if database_url.startswith("sqlite+aiosqlite:///"):
        return database_url.replace("sqlite+aiosqlite:///", "sqlite:///", 1)
    return database_url.replace("sqlite+aiosqlite://", "sqlite:///", 1)


database_url = settings.DATABASE_URL
is_sqlite = database_url.startswith("sqlite")
if is_sqlite:
    database_url = sync_sqlite_url(database_url)

config.set_main_option("sqlalchemy.url", database_url)


def run_migrations_offline() -> None:
    """Emit SQL for the migrations without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=is_sqlite,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=is_sqlite,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    connectable = create_async_engine(database_url, poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


def run_migrations_online() -> None:
    if is_sqlite:
        connectable = create_engine(database_url, poolclass=pool.NullPool)
        with connectable.connect() as connection:
            do_run_migrations(connection)
        connectable.dispose()
    else:
        asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
