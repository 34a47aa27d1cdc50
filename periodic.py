import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs a coroutine function forever, sleeping `interval` seconds after each run ends.

    The delay is measured from the end of a run, so a slow run pushes the
    next one back and two runs never overlap.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[None]], interval: float):
        self.name = name
        self.func = func
        self.interval = interval
        self.task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    async def _loop(self):
        while True:
            try:
                await self.func()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] Critical error", self.name)
            await asyncio.sleep(self.interval)

    def start(self):
        if self.running:
            return
        logger.info("[%s] Started, running every %ss", self.name, self.interval)
        self.task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self):
        if self.task is None:
            return
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass
        self.task = None
        logger.info("[%s] Stopped", self.name)
