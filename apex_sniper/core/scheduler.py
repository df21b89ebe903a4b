import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `func` every `interval` seconds until the stop event is set.

    A failing tick is logged and the loop carries on. Stopping never cancels a
    tick in progress; the loop exits after the current one completes.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable], run_immediately: bool = True):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self.ticks = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    async def run(self, stop_event: asyncio.Event):
        logger.info(f"{self.name} started (every {self.interval:g}s)")
        if not self.run_immediately:
            await self._sleep(stop_event)

        while not stop_event.is_set():
            try:
                await self.func()
            except Exception:
                self.failures += 1
                logger.exception(f"{self.name} tick failed")
            self.ticks += 1
            await self._sleep(stop_event)

        logger.info(f"{self.name} stopped after {self.ticks} ticks")

    async def _sleep(self, stop_event: asyncio.Event):
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    def start(self, stop_event: asyncio.Event) -> asyncio.Task:
        self._task = asyncio.create_task(self.run(stop_event), name=self.name)
        return self._task
