"""
Periodic background tasks sharing the event loop with ingestion.

Each run is bounded in time and isolated: a failing or hung run is logged
and the next run starts on schedule.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs an async job every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        timeout: float | None = None,
        run_immediately: bool = False,
    ) -> None:
        """
        Initialize the task.

        Args:
            name: Name used in log messages
            interval: Seconds between runs
            job: Async callable to run
            timeout: Maximum runtime of one run (defaults to the interval)
            run_immediately: Run once at start instead of after the first interval
        """
        if interval <= 0:
            raise ValueError(f"Interval must be positive, got {interval}")

        self.name = name
        self.interval = interval
        self.job = job
        self.timeout = timeout or interval
        self.run_immediately = run_immediately

        self._task: asyncio.Task | None = None

        # Metrics tracking
        self.runs = 0
        self.failures = 0
        self.timeouts = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        """Run the job once, bounded by the timeout; never raises."""
        self.runs += 1
        try:
            await asyncio.wait_for(self.job(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.timeouts += 1
            logger.warning(f"Task {self.name} exceeded {self.timeout}s and was abandoned")
        except Exception as e:
            self.failures += 1
            logger.error(f"Task {self.name} failed: {e}", exc_info=True)

    async def _loop(self) -> None:
        if self.run_immediately:
            await self.run_once()
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        if self.is_running:
            logger.warning(f"Task {self.name} already running")
            return
        logger.info(f"Scheduling {self.name} every {self.interval} seconds")
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        """Cancel the task and wait for it to finish."""
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass  # Expected when cancelling

    def get_stats(self) -> dict[str, Any]:
        return {
            "interval": self.interval,
            "is_running": self.is_running,
            "runs": self.runs,
            "failures": self.failures,
            "timeouts": self.timeouts,
        }


class Scheduler:
    """A named group of periodic tasks started and stopped together."""

    def __init__(self) -> None:
        self.tasks: dict[str, PeriodicTask] = {}

    def add(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        timeout: float | None = None,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"Task {name} already scheduled")
        task = PeriodicTask(name, interval, job, timeout=timeout, run_immediately=run_immediately)
        self.tasks[name] = task
        return task

    def start(self) -> None:
        for task in self.tasks.values():
            task.start()

    async def stop(self) -> None:
        await asyncio.gather(*(task.stop() for task in self.tasks.values()))

    def get_stats(self) -> dict[str, dict[str, Any]]:
        return {name: task.get_stats() for name, task in self.tasks.items()}
