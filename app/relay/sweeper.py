import asyncio
import contextlib
import logging
from typing import Callable, Optional

from app.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


class PeriodicSweeper:
    """
    Run a synchronous sweep callable on a fixed interval in a background task.

    The callable returns how many items it removed. A failing sweep is logged
    and retried on the next tick; it never stops the loop.
    """

    def __init__(self, name: str, interval: float, sweep: Callable[[], int]):
        self.name = name
        self.interval = interval
        self._sweep = sweep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())

    def start(self) -> None:
        if self.running:
            return
        logger.debug(f"[Sweeper] Starting {self.name} every {self.interval}s")
        self._task = asyncio.create_task(self._run(), name=f"sweeper-{self.name}")

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug(f"[Sweeper] Stopped {self.name}")

    def run_once(self) -> int:
        try:
            removed = self._sweep()
        except Exception as e:
            log_exception_with_details(logger, f"[Sweeper] {self.name}", e)
            return 0
        if removed:
            logger.debug(f"[Sweeper] {self.name} removed {removed} item(s)")
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.run_once()
