"""Pytest configuration and fixtures for healthchain-access tests."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from healthchain_access.clock import FrozenClock

try:
    from testcontainers.postgres import PostgresContainer

    HAS_TESTCONTAINERS = True
except ImportError:
    HAS_TESTCONTAINERS = False


T0 = datetime(2025, 3, 1, 12, 0, 0, tzinfo=UTC)


def make_mock_conn() -> AsyncMock:
    """AsyncMock connection whose ``transaction()`` works as an async context manager."""
    conn = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_conn():
    return make_mock_conn()


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def mock_audit():
    audit = AsyncMock()
    audit.record.side_effect = lambda conn, event: event
    return audit


def asyncpg_url(postgres) -> str:
    url = postgres.get_connection_url()
    if url.startswith("postgresql+psycopg2://"):
        url = url.replace("postgresql+psycopg2://", "postgresql://")
    return url


@pytest.fixture(scope="session")
def postgres_container():
    """Create a PostgreSQL container for integration tests."""
    if not HAS_TESTCONTAINERS:
        pytest.skip("testcontainers not installed")

    with PostgresContainer("postgres:15") as postgres:
        yield postgres


@pytest.fixture
async def access_db(postgres_container):
    """Fresh access-control schema on a dedicated connection.

    Tables are recreated for every test so that audit chains and token
    hashes from earlier tests do not leak in.
    """
    import asyncpg

    from healthchain_access.schema import SchemaManager

    conn = await asyncpg.connect(asyncpg_url(postgres_container))
    await conn.execute(
        """
        DROP TABLE IF EXISTS access_grants, temporary_access_permissions,
            emergency_access_tokens, access_audit_log CASCADE
        """
    )
    await SchemaManager().create_schema(conn)

    yield conn

    await conn.close()


@pytest.fixture
async def access_pool(postgres_container, access_db):
    """Connection pool over the same fresh schema, for concurrency tests."""
    import asyncpg

    pool = await asyncpg.create_pool(asyncpg_url(postgres_container), min_size=2, max_size=10)
    yield pool
    await pool.close()
