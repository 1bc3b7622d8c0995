"""Repeating asyncio task with explicit stop/cancel."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from btc_trading.utils.logging import get_logger


class RepeatingTask:
    """Run ``fn`` every ``interval_sec`` until stopped.

    ``stop()`` ends scheduling once the in-flight call returns; ``cancel()``
    aborts the in-flight call as well and is meant for shutdown.
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        fn: Callable[[], Awaitable[object]],
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval_sec <= 0:
            raise ValueError("interval_must_be_positive")
        self.name = name
        self._interval_sec = interval_sec
        self._fn = fn
        self._run_immediately = run_immediately
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.iterations = 0
        self._logger = get_logger("btc_trading.scheduler")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError("task_already_running")
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=self.name)
        return self._task

    def stop(self) -> None:
        self._stop.set()

    def cancel(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()

    async def join(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        if not self._run_immediately and await self._wait_interval():
            return
        while not self._stop.is_set():
            self.iterations += 1
            try:
                await self._fn()
            except Exception as exc:  # noqa: BLE001 - keep the schedule alive.
                self._logger.exception(
                    "scheduled_task_failed",
                    task=self.name,
                    iteration=self.iterations,
                    error=str(exc),
                )
            if await self._wait_interval():
                return

    async def _wait_interval(self) -> bool:
        """Sleep one interval; True when stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval_sec)
        except asyncio.TimeoutError:
            return False
        return True
