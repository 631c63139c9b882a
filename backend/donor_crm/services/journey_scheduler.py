import asyncio
import logging
from typing import Optional

from donor_crm import config
from donor_crm.services.journey_executor import JourneyExecutor

logger = logging.getLogger(__name__)


class JourneyScheduler:
    """
    Periodically advances due journey runs.
    Owned by the hosting process: start() once on startup, stop() on shutdown.
    """

    def __init__(self, executor: JourneyExecutor, interval: float = config.JOURNEY_TICK_INTERVAL_SECONDS):
        self.executor = executor
        self.interval = interval
        self.task: Optional[asyncio.Task] = None
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def start(self):
        """Start the scheduler loop; a no-op when it is already running"""
        if self.running:
            logger.warning("Journey scheduler is already running")
            return
        self.task = asyncio.create_task(self._run_loop())
        logger.info("=== JOURNEY SCHEDULER STARTED ===")
        logger.info(f"Tick interval: {self.interval}s, batch size: {self.executor.batch_size}")

    async def stop(self):
        """Stop the scheduler loop and wait for it to finish"""
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
            self.task = None
        logger.info("=== JOURNEY SCHEDULER STOPPED ===")

    async def run_once(self) -> int:
        """One scheduler iteration: release stale claims, then tick. Errors are logged, never raised."""
        self.tick_count += 1
        try:
            await self.executor.release_stale_claims()
            return await self.executor.tick()
        except Exception as e:
            logger.error(f"[TICK] Tick {self.tick_count} failed: {e}", exc_info=True)
            return 0

    async def _run_loop(self):
        logger.info("=== JOURNEY SCHEDULER LOOP STARTED ===")
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)
