"""Tests for the background expiry sweeper."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from healthchain_access.access.sweeper import ExpirySweeper, SweepResult
from healthchain_access.config import AccessConfig


@pytest.fixture
def pool(mock_conn):
    pool = MagicMock()
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=mock_conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool.acquire = MagicMock(return_value=acquire)
    return pool


@pytest.fixture
def temporary():
    manager = AsyncMock()
    manager.sweep_expired.return_value = 0
    return manager


@pytest.fixture
def emergency():
    service = AsyncMock()
    service.sweep_expired.return_value = 0
    return service


class TestSweepResult:
    def test_total(self):
        assert SweepResult(permissions_expired=2, tokens_expired=3).total == 5


class TestExpirySweeper:
    async def test_run_once_sweeps_both_tables(self, pool, temporary, emergency):
        temporary.sweep_expired.return_value = 3
        emergency.sweep_expired.return_value = 1
        sweeper = ExpirySweeper(pool, temporary, emergency, AccessConfig(sweep_batch_size=10))

        result = await sweeper.run_once()

        assert result.permissions_expired == 3
        assert result.tokens_expired == 1
        temporary.sweep_expired.assert_awaited_once()
        emergency.sweep_expired.assert_awaited_once()

    async def test_run_once_drains_full_batches(self, pool, temporary, emergency):
        temporary.sweep_expired.side_effect = [10, 10, 4]
        sweeper = ExpirySweeper(pool, temporary, emergency, AccessConfig(sweep_batch_size=10))

        result = await sweeper.run_once()

        assert result.permissions_expired == 24
        assert temporary.sweep_expired.await_count == 3

    async def test_start_and_stop(self, pool, temporary, emergency):
        config = AccessConfig(sweep_interval_seconds=0.01)
        sweeper = ExpirySweeper(pool, temporary, emergency, config)

        await sweeper.start()
        assert sweeper.running
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert not sweeper.running
        assert temporary.sweep_expired.await_count >= 1

    async def test_start_is_idempotent(self, pool, temporary, emergency):
        sweeper = ExpirySweeper(pool, temporary, emergency, AccessConfig(sweep_interval_seconds=60))

        await sweeper.start()
        task = sweeper._task
        await sweeper.start()

        assert sweeper._task is task
        await sweeper.stop()

    async def test_loop_survives_sweep_failure(self, pool, temporary, emergency):
        temporary.sweep_expired.side_effect = [RuntimeError("connection reset"), 0, 0, 0, 0, 0]
        config = AccessConfig(sweep_interval_seconds=0.01)
        sweeper = ExpirySweeper(pool, temporary, emergency, config)

        await sweeper.start()
        await asyncio.sleep(0.05)
        await sweeper.stop()

        assert temporary.sweep_expired.await_count >= 2
