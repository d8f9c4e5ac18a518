"""
Bounded background worker for post-turn work (memory touch, auto-memory).

Jobs are coroutine factories pushed onto a fixed-size queue and drained by a
small pool of asyncio tasks. A full queue drops the job with a warning. A
failing job is logged with its name and never reaches the request that
submitted it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


@dataclass
class _Job:
    name: str
    factory: JobFactory


class BackgroundWorker:
    def __init__(self, concurrency: int = 4, queue_size: int = 256):
        self._concurrency = max(int(concurrency), 1)
        self._queue: asyncio.Queue[_Job] = asyncio.Queue(maxsize=max(int(queue_size), 1))
        self._runners: list[asyncio.Task] = []

        self._submitted_total = 0
        self._succeeded_total = 0
        self._failed_total = 0
        self._dropped_total = 0
        self._last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return any(not runner.done() for runner in self._runners)

    def start(self) -> None:
        """Spawn the runner tasks. Must be called from inside the event loop."""
        if self.running:
            return
        self._runners = [
            asyncio.create_task(self._run_loop(), name=f"background-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info("Background worker started (%d runners)", self._concurrency)

    def submit(self, name: str, factory: JobFactory) -> bool:
        """Queue a job. Returns False when it was dropped."""
        try:
            self._queue.put_nowait(_Job(name=name, factory=factory))
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.warning("Background queue full, dropped job %s", name)
            return False
        self._submitted_total += 1
        return True

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        await self._queue.join()

    async def shutdown(self, drain_timeout: float = 5.0) -> None:
        if self._runners:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Background worker shutdown with %d job(s) pending", self._queue.qsize())

        runners, self._runners = self._runners, []
        for runner in runners:
            runner.cancel()
        for runner in runners:
            try:
                await runner
            except asyncio.CancelledError:
                pass
        logger.info("Background worker stopped")

    def stats(self) -> dict:
        return {
            "running": self.running,
            "queued": self._queue.qsize(),
            "submitted_total": self._submitted_total,
            "succeeded_total": self._succeeded_total,
            "failed_total": self._failed_total,
            "dropped_total": self._dropped_total,
            "last_error": self._last_error,
        }

    async def _run_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await job.factory()
                self._succeeded_total += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._failed_total += 1
                self._last_error = f"{job.name}: {e}"
                logger.exception("Background job %s failed", job.name)
            finally:
                self._queue.task_done()
