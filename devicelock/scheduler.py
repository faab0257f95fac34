"""
Named periodic tasks with fixed cadences and a shared stop signal.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("devicelock.scheduler")


class PeriodicTask:
    def __init__(
        self,
        name: str,
        interval: float,
        job: Callable[[], Awaitable[Any]],
        stop_event: asyncio.Event,
        initial_delay: float = 0.0,
    ):
        self.name = name
        self.interval = interval
        self.job = job
        self.stop_event = stop_event
        self.initial_delay = initial_delay
        self.runs = 0
        self.failures = 0
        self.last_result: Any = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    async def run_now(self) -> Any:
        """Run the job once outside the cadence. Exceptions are logged, not raised."""
        self.runs += 1
        try:
            self.last_result = await self.job()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception(f"PERIODIC | {self.name} failed (run {self.runs})")
            return None
        return self.last_result

    async def _wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True when the stop signal fired."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        logger.info(f"PERIODIC | {self.name} started every={self.interval:.0f}s")
        if self.initial_delay and await self._wait(self.initial_delay):
            return
        while not self.stop_event.is_set():
            await self.run_now()
            if await self._wait(self.interval):
                break
        logger.info(f"PERIODIC | {self.name} stopped after runs={self.runs}")

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    async def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
