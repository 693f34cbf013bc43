"""
In-process periodic job runner on the application's event loop.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from taskflow.utils.timezone import utc_now

logger = logging.getLogger(__name__)


@dataclass
class PeriodicJob:
    name: str
    schedule: object
    func: Callable[[datetime], Awaitable[object]]
    run_on_start: bool = False


class PeriodicRunner:
    """Runs each job in its own asyncio task until ``stop`` is called.

    A job that raises is logged and rescheduled; it never stops the runner.
    ``stop`` cancels pending waits but lets a run that already started finish.
    """

    def __init__(self, jobs: Optional[List[PeriodicJob]] = None, clock: Callable[[], datetime] = utc_now):
        self.jobs: List[PeriodicJob] = list(jobs or [])
        self._clock = clock
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self.runs: Dict[str, int] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def add_job(self, job: PeriodicJob) -> None:
        self.jobs.append(job)
        if self._stop_event is not None and not self._stop_event.is_set():
            self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"periodic:{job.name}")

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        for job in self.jobs:
            self._tasks[job.name] = asyncio.create_task(self._loop(job), name=f"periodic:{job.name}")
        logger.info("🚀 [Runner] Started %d periodic jobs: %s", len(self.jobs), ", ".join(j.name for j in self.jobs))

    async def stop(self) -> None:
        if self._stop_event is None:
            return
        self._stop_event.set()
        tasks = list(self._tasks.values())
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._stop_event = None
        logger.info("🛑 [Runner] Stopped")

    async def _loop(self, job: PeriodicJob) -> None:
        stop_event = self._stop_event
        if job.run_on_start:
            await self._run_once(job)
        while not stop_event.is_set():
            now = self._clock()
            delay = max(0.0, (job.schedule.next_fire_after(now) - now).total_seconds())
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                await self._run_once(job)
            else:
                break

    async def _run_once(self, job: PeriodicJob) -> None:
        try:
            await job.func(self._clock())
        except Exception:
            logger.exception("❌ [Runner] Job %s failed", job.name)
        finally:
            self.runs[job.name] = self.runs.get(job.name, 0) + 1
