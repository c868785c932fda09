"""
Periodic timers with skip-if-busy semantics.

Each tick runs as its own task. If the previous tick is still awaiting I/O
when the next one is due, the new tick is dropped rather than queued, so a
slow upstream never builds a backlog of outstanding requests. Tick bodies
are fully caught: an exception is logged and the next tick runs normally.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    def __init__(self, name: str, interval: float,
                 callback: Callable[[], Awaitable[None]],
                 run_immediately: bool = False):
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_immediately = run_immediately
        self._loop_task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def running(self) -> bool:
        return self._loop_task is not None

    def start(self) -> None:
        if self._loop_task is not None:
            logger.warning(f"[{self.name}] Already started")
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._run_forever())

    def stop(self) -> None:
        """Stop scheduling ticks. A tick already in flight is left to finish."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

    async def _run_forever(self) -> None:
        if self._run_immediately:
            self._spawn_tick()
        while True:
            await asyncio.sleep(self.interval)
            self._spawn_tick()

    def _spawn_tick(self) -> None:
        if self._busy:
            logger.debug(f"[{self.name}] Previous tick still running, skipping")
            return
        task = asyncio.get_running_loop().create_task(self.run_once())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def run_once(self) -> bool:
        """Run one tick now. Returns False if a tick was already running."""
        if self._busy:
            return False
        self._busy = True
        try:
            await self._callback()
        except Exception as e:
            logger.exception(f"[{self.name}] Tick failed: {e}")
        finally:
            self._busy = False
        return True
