"""Periodic background jobs.

Each job is an explicit task object that can be started, stopped and
started again. A failing run is logged and the job keeps its schedule.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async callable every `interval` seconds."""

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval <= 0:
            raise ValueError(f"Interval for {name} must be positive")
        self.name = name
        self.interval = interval
        self.job = job
        self.run_immediately = run_immediately
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info(f"Periodic task {self.name} started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task {self.name} stopped")

    async def run_once(self) -> None:
        """Run the job a single time, logging instead of raising."""
        try:
            await self.job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(f"Periodic task {self.name} failed: {e}", exc_info=True)
        finally:
            self.runs += 1

    async def _loop(self) -> None:
        if not self.run_immediately:
            await self._sleep(self.interval)
        while True:
            await self.run_once()
            await self._sleep(self.interval)


class Scheduler:
    """Owns a set of periodic tasks and starts or stops them together."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep
        self.tasks: dict[str, PeriodicTask] = {}

    def every(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ) -> PeriodicTask:
        """Register a job. Registering an existing name replaces it."""
        if name in self.tasks and self.tasks[name].running:
            raise RuntimeError(f"Task {name} is running; stop the scheduler first")
        task = PeriodicTask(name, interval, job, run_immediately=run_immediately, sleep=self._sleep)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()

    async def stop(self) -> None:
        for task in self.tasks.values():
            await task.stop()

    @property
    def running(self) -> bool:
        return any(task.running for task in self.tasks.values())
