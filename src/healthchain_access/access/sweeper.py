"""Optional background job that stamps lapsed permissions and tokens.

Access decisions never depend on it: expiry is computed from ``expires_at``
on every read. The sweep only fills bookkeeping columns and writes the
``expire`` / ``emergency_expire`` audit events, so it can be stopped or
cancelled at any point.
"""

import asyncio
import logging
from dataclasses import dataclass

import asyncpg

from ..config import AccessConfig
from .emergency import EmergencyTokenService
from .temporary import TemporaryPermissionManager

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    permissions_expired: int = 0
    tokens_expired: int = 0

    @property
    def total(self) -> int:
        return self.permissions_expired + self.tokens_expired


class ExpirySweeper:
    def __init__(
        self,
        pool: asyncpg.Pool,
        temporary: TemporaryPermissionManager,
        emergency: EmergencyTokenService,
        config: AccessConfig | None = None,
    ):
        self._pool = pool
        self._temporary = temporary
        self._emergency = emergency
        self._config = config or AccessConfig()
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Expiry sweeper started (interval %.0fs)", self._config.sweep_interval_seconds
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Expiry sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.sweep_interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in expiry sweep: %s", e)

    async def run_once(self) -> SweepResult:
        """Sweep until both tables have no lapsed rows left in a full batch."""
        batch_size = self._config.sweep_batch_size
        result = SweepResult()

        async with self._pool.acquire() as conn:
            while True:
                count = await self._temporary.sweep_expired(conn, batch_size=batch_size)
                result.permissions_expired += count
                if count < batch_size:
                    break
            while True:
                count = await self._emergency.sweep_expired(conn, batch_size=batch_size)
                result.tokens_expired += count
                if count < batch_size:
                    break

        if result.total:
            logger.info(
                "Sweep complete: %d permissions, %d emergency codes expired",
                result.permissions_expired,
                result.tokens_expired,
            )
        return result
