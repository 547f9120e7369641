"""
This file contains shared fixtures for the test suite.
"""

import os

# Set env vars before any application modules are imported
os.environ.setdefault("TEST_MODE", "1")
os.environ.setdefault("BOT_TOKEN", "test_token")
os.environ.setdefault("PYTHONIOENCODING", "utf-8")

import pytest
import pytest_asyncio

from modelbot.config import DatabaseSettings
from modelbot.db.connection import ConnectionManager
from modelbot.db.manager import DatabaseManager
from modelbot.db.models import RetryConfig
from modelbot.db.transactions import TransactionManager
from modelbot.scheduler.scheduler_manager import SchedulerManager

SCHEMA = """
CREATE TABLE IF NOT EXISTS nations (
    nation_id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    gdp INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS wars (
    war_id INTEGER PRIMARY KEY AUTOINCREMENT,
    attacker_id INTEGER NOT NULL,
    defender_id INTEGER NOT NULL,
    FOREIGN KEY (attacker_id) REFERENCES nations(nation_id),
    FOREIGN KEY (defender_id) REFERENCES nations(nation_id)
);
"""


def insert_nation(name: str, gdp: int = 100):
    """Return a unit of work inserting one nation and returning its id."""

    async def operation(conn):
        cursor = await conn.execute("INSERT INTO nations (name, gdp) VALUES (?, ?)", (name, gdp))
        return cursor.lastrowid

    return operation


async def nation_names(conn) -> list:
    async with conn.execute("SELECT name FROM nations ORDER BY nation_id") as cursor:
        return [row["name"] for row in await cursor.fetchall()]


async def create_schema(conn) -> None:
    await conn.executescript(SCHEMA)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "modelbot.db"


@pytest.fixture
def db_settings(db_path, tmp_path) -> DatabaseSettings:
    return DatabaseSettings(
        path=str(db_path),
        backup_directory=str(tmp_path / "backups"),
        connection_timeout_ms=1000,
        retry_attempts=3,
        health_check_interval_ms=50,
        backup_interval_ms=50,
    )


@pytest.fixture
def fast_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay_ms=10, max_delay_ms=50, backoff_multiplier=2.0)


@pytest_asyncio.fixture
async def scheduler():
    manager = SchedulerManager("UTC")
    yield manager
    manager.shutdown()


@pytest_asyncio.fixture
async def connection_manager(db_settings, fast_retry, scheduler):
    manager = ConnectionManager(db_settings, fast_retry, scheduler)
    await manager.connect()
    async with manager.connection() as conn:
        await create_schema(conn)
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def transaction_manager(connection_manager, fast_retry):
    return TransactionManager(connection_manager, fast_retry)


@pytest_asyncio.fixture
async def database(db_settings, fast_retry, scheduler):
    manager = DatabaseManager(
        db_settings,
        retry_config=fast_retry,
        reconnect_config=fast_retry,
        scheduler=scheduler,
    )
    await manager.initialize()
    await manager.execute_operation(create_schema, "create schema")
    yield manager
    await manager.close()
