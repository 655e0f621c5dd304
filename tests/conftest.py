"""
Shared fixtures.

Environment overrides are applied before the application modules are
imported, so the global settings never point at a real database or enable
the persistent log sink.
"""

import logging
import os
import uuid

os.environ["ENABLE_DATABASE_LOGGING"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CRON_SECRET"] = "test-secret"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession as SQLModelAsyncSession

from offmarket.core.logger import LogLevel, LogSink, StructuredLogger
from offmarket.db import models  # noqa: F401
from offmarket.db.sqlite_adapter import SQLiteAdapter


class FakeClock:
    """Manually advanced clock; call it for epoch milliseconds."""

    def __init__(self, start_ms: float = 1_700_000_000_000):
        self.now = start_ms

    def __call__(self) -> float:
        return self.now

    def seconds(self) -> float:
        return self.now / 1000

    def advance(self, ms: float) -> None:
        self.now += ms


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)

    def entries(self, level=None):
        found = [r.log_entry for r in self.records]
        if level is not None:
            found = [e for e in found if e.level == level]
        return found


class RecordingSink(LogSink):
    """Keeps every written batch; fails while `failing` is set."""

    def __init__(self, failing: bool = False):
        self.batches = []
        self.failing = failing

    async def write(self, entries):
        if self.failing:
            raise RuntimeError("sink unavailable")
        self.batches.append(list(entries))

    @property
    def written(self):
        return [entry for batch in self.batches for entry in batch]


def make_console():
    console = logging.getLogger(f"tests.console.{uuid.uuid4().hex}")
    console.setLevel(logging.DEBUG)
    console.propagate = False
    handler = ListHandler()
    console.addHandler(handler)
    return console, handler


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def console():
    return make_console()


@pytest.fixture
def app_logger(console):
    """DEBUG logger writing to a list handler, without a persistent sink."""
    console_logger, _ = console
    return StructuredLogger(LogLevel.DEBUG, console=console_logger)


@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with every table created."""
    engine = SQLiteAdapter().create_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=SQLModelAsyncSession, expire_on_commit=False)

    await engine.dispose()
