"""Expiry sweep - periodic backstop for lazy expiry.

Correctness never depends on this loop running: every read path purges
expired blocks and idle sessions itself. The sweep reclaims rows for
addresses and principals that stop sending requests, using the exact same
predicates as the lazy paths.
"""

import asyncio
import threading
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from davgate.core.clock import Clock, utcnow
from davgate.core.config import settings
from davgate.core.database import async_session_maker, session_scope
from davgate.core.logging import get_logger
from davgate.services.block import BlockService
from davgate.services.principal import PrincipalService
from davgate.services.session import SessionService

logger = get_logger("expiry_sweep")

# Delay before the first run so startup is not competing with the sweep
STARTUP_DELAY_SECONDS = 60


@dataclass
class SweepResult:
    blocks: int = 0
    sessions: int = 0
    principals: int = 0

    @property
    def total(self) -> int:
        return self.blocks + self.sessions + self.principals


class ExpirySweepService:
    """Background service that purges expired blocks, sessions and principals."""

    _instance: Optional["ExpirySweepService"] = None
    _instance_lock: threading.Lock = threading.Lock()
    _task: asyncio.Task | None = None

    def __init__(
        self,
        interval_seconds: int | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        now: Clock = utcnow,
    ):
        self._running = False
        if interval_seconds is None:
            interval_seconds = settings.sweep_interval_seconds
        self._interval = max(1, interval_seconds)
        self._session_factory = session_factory or async_session_maker
        self._now = now

    @classmethod
    def get_instance(cls) -> "ExpirySweepService":
        """Get singleton instance of the sweep service (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @property
    def interval_seconds(self) -> int:
        return self._interval

    @interval_seconds.setter
    def interval_seconds(self, value: int) -> None:
        """Set sweep interval in seconds (minimum 1 second)."""
        self._interval = max(1, value)
        logger.info(f"Expiry sweep interval set to {self._interval}s")

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._running:
            logger.warning("Expiry sweep is already running")
            return

        self._running = True
        ExpirySweepService._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Expiry sweep started (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if ExpirySweepService._task:
            ExpirySweepService._task.cancel()
            try:
                await ExpirySweepService._task
            except asyncio.CancelledError:
                pass
            ExpirySweepService._task = None
        logger.info("Expiry sweep stopped")

    async def _sweep_loop(self) -> None:
        await asyncio.sleep(STARTUP_DELAY_SECONDS)

        while self._running:
            try:
                result = await self.run_now()
                if result.total > 0:
                    logger.info(
                        f"Expiry sweep removed {result.blocks} blocks, "
                        f"{result.sessions} sessions, {result.principals} principals"
                    )
            except Exception as e:
                logger.error(f"Error in expiry sweep: {e}")

            await asyncio.sleep(self._interval)

    async def run_now(self) -> SweepResult:
        """Run one sweep pass in its own transaction."""
        now = self._now()
        async with session_scope(self._session_factory) as db:
            return SweepResult(
                blocks=await BlockService(db, now=lambda: now).purge_expired(),
                sessions=await SessionService(db, now=lambda: now).purge_idle(),
                principals=await PrincipalService(db, now=lambda: now).cleanup_expired(),
            )
