"""Cancellable periodic background task."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs ``func`` every ``interval`` seconds until stopped.

    A tick that raises is logged and the loop carries on with the next one.
    ``stop`` waits for the tick in progress to finish.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[None]],
        interval: float,
    ) -> None:
        self.name = name
        self._func = func
        self.interval = max(0.05, float(interval))
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._func()
            except (SQLAlchemyError, OSError, ValueError, TypeError, KeyError) as exc:
                logger.error("%s tick failed: %s", self.name, exc, exc_info=True)
            self.ticks += 1

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except TimeoutError:
                pass
