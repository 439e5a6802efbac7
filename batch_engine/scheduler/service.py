import asyncio
import logging
import time
from typing import TYPE_CHECKING, Optional

from batch_engine.scheduler.ticker import run_cleanup, run_ticker

if TYPE_CHECKING:
    from batch_engine.engine import BatchEngine

logger = logging.getLogger(__name__)

class SchedulerService:
    """Runs the reaper every `interval` seconds and retention cleanup every `cleanup_interval`."""

    def __init__(self, engine: "BatchEngine", interval: Optional[float] = None, cleanup_interval: Optional[float] = None):
        self.engine = engine
        self.interval = interval or engine.settings.SCHEDULER_INTERVAL_SECONDS
        self.cleanup_interval = cleanup_interval or engine.settings.CLEANUP_INTERVAL_SECONDS
        self._running = False
        self._task = None
        self._last_cleanup: Optional[float] = None

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Scheduler service stopped.")

    def _cleanup_due(self) -> bool:
        return self._last_cleanup is None or time.monotonic() - self._last_cleanup >= self.cleanup_interval

    async def tick(self) -> None:
        await run_ticker(self.engine)
        if self._cleanup_due():
            self._last_cleanup = time.monotonic()
            await run_cleanup(self.engine)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)

            await asyncio.sleep(self.interval)
