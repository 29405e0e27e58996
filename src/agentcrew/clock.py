from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)


class Clock:
    """Suspension points and fire-and-forget submissions for paced work.

    Every modeled delay goes through ``sleep`` and every background activity
    through ``spawn`` so that a test clock can replace both.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()
        self._tasks: set[asyncio.Task[Any]] = set()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))

    def uniform(self, low: float, high: float) -> float:
        return self.rng.uniform(low, high)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        delay: float = 0.0,
        name: str | None = None,
    ) -> asyncio.Task[Any]:
        async def _run() -> Any:
            if delay > 0:
                await self.sleep(delay)
            return await coro

        task = asyncio.get_running_loop().create_task(_run(), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed: %s",
                task.get_name(),
                exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task, including ones spawned meanwhile, is done."""
        while True:
            pending = {task for task in self._tasks if not task.done()}
            if pending:
                await asyncio.wait(pending)
                continue
            await asyncio.sleep(0)
            if all(task.done() for task in self._tasks):
                return


class AsyncioClock(Clock):
    """Real wall-clock pacing."""


class InstantClock(Clock):
    """Records requested sleeps and yields control without waiting."""

    def __init__(self, rng: random.Random | None = None) -> None:
        super().__init__(rng or random.Random(0))
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)
