"""Background loop that runs due status polls."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .config import PollingConfig
from .job_store import JobStore
from .models import utcnow
from .orchestrator import GenerationOrchestrator, PollResult

logger = logging.getLogger(__name__)


class PollScheduler:
    """
    Claims due jobs from the store and polls each one as its own task.

    The job store holds the schedule; this class only holds the tasks that
    are running right now, so stopping and restarting loses nothing.
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        job_store: JobStore,
        config: Optional[PollingConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orchestrator = orchestrator
        self.job_store = job_store
        self.config = config or PollingConfig()
        self._clock = clock
        self._loop_task: Optional[asyncio.Task] = None
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrent_polls))

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> None:
        if self.running:
            return
        await self.job_store.recover_in_flight()
        self._loop_task = asyncio.create_task(self._run())
        logger.info(f"Poll scheduler started (tick {self.config.tick_interval}s)")

    async def stop(self) -> None:
        tasks: List[asyncio.Task] = []
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        tasks.extend(self._in_flight.values())

        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._in_flight.clear()
        logger.info("Poll scheduler stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll scheduler tick failed")
            await asyncio.sleep(self.config.tick_interval)

    async def run_once(self) -> List[str]:
        """Claim due jobs and start a poll task for each. Returns the claimed ids."""
        capacity = max(0, self.config.max_concurrent_polls - len(self._in_flight))
        if capacity == 0:
            return []

        claimed = await self.job_store.claim_due(limit=capacity)
        for job in claimed:
            task = asyncio.create_task(self._poll(job.id))
            self._in_flight[job.id] = task
            task.add_done_callback(lambda _t, job_id=job.id: self._in_flight.pop(job_id, None))
        return [job.id for job in claimed]

    async def _poll(self, job_id: str) -> Optional[PollResult]:
        async with self._semaphore:
            try:
                result = await self.orchestrator.poll_once(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Poll for job {job_id} crashed")
                # The claim cleared the cursor; re-arm it so the job is not stranded.
                await self._rearm(job_id)
                return None
        logger.debug(f"Poll for job {job_id}: {result.outcome.value}")
        return result

    async def _rearm(self, job_id: str) -> None:
        due = self._clock() + timedelta(seconds=self.config.error_delay)
        await self.job_store.schedule_poll(job_id, due)

    async def drain(self) -> None:
        """Wait for polls already started. Used by tests and shutdown paths."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)
            for job_id, task in list(self._in_flight.items()):
                if task.done():
                    self._in_flight.pop(job_id, None)
