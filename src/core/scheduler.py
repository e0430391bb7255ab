import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``tick`` every ``interval_seconds``, one run at a time."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        tick: Callable[[], Awaitable[Any]],
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self.tick = tick
        self.runs = 0
        self.failures = 0
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info(f"Starting {self.name} (interval: {self.interval_seconds}s)")

        while True:
            started = loop.time()
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception(f"{self.name} tick failed, retrying on next interval")
            self.runs += 1

            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self.interval_seconds - elapsed))

    def start(self) -> None:
        if self.is_running:
            logger.info(f"{self.name} is already running")
            return
        self._task = asyncio.create_task(self.run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"{self.name} stopped")
