"""Periodic background tasks on the asyncio event loop.

Each scheduled job gets its own task that sleeps for its interval and then
invokes the callback.  A failing callback is logged and the job keeps
running; it never takes down the other jobs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

JobCallback = Callable[[], Awaitable[Any] | Any]


class PeriodicScheduler:
    """Best-effort periodic firing of named jobs.

    Jobs scheduled before :meth:`start` are launched when the scheduler
    starts; jobs scheduled afterwards are launched immediately.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, tuple[float, JobCallback]] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False

    @property
    def job_names(self) -> list[str]:
        return sorted(self._jobs)

    def schedule(self, name: str, min_interval_seconds: float, callback: JobCallback) -> None:
        """Register *callback* to run every *min_interval_seconds*.

        Scheduling a name that already exists replaces the previous job.
        """
        if min_interval_seconds <= 0:
            raise ValueError("min_interval_seconds must be positive")
        self.cancel(name)
        self._jobs[name] = (min_interval_seconds, callback)
        if self._running:
            self._launch(name)
        log.debug("Scheduled job %s every %.0fs", name, min_interval_seconds)

    def cancel(self, name: str) -> None:
        """Remove the job *name* and cancel its task, if any."""
        self._jobs.pop(name, None)
        task = self._tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for name in self._jobs:
            self._launch(name)
        log.info("Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        """Cancel every running job and wait for the tasks to finish."""
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        log.info("Scheduler stopped")

    async def run_now(self, name: str) -> None:
        """Run a job once, outside its schedule (with the same error isolation)."""
        _, callback = self._jobs[name]
        await self._invoke(name, callback)

    # -- internals -----------------------------------------------------------

    def _launch(self, name: str) -> None:
        interval, callback = self._jobs[name]
        self._tasks[name] = asyncio.create_task(
            self._loop(name, interval, callback), name=f"job-{name}",
        )

    async def _loop(self, name: str, interval: float, callback: JobCallback) -> None:
        while True:
            await asyncio.sleep(interval)
            await self._invoke(name, callback)

    async def _invoke(self, name: str, callback: JobCallback) -> None:
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Scheduled job %s failed", name)
