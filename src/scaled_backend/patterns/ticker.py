"""Timer dependencies that drive periodic flushes."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any, Protocol

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[Any]]


class Ticker(Protocol):
    """Protocol for timers that invoke a callback periodically."""

    @property
    def is_running(self) -> bool:
        """Whether the ticker is currently attached to a callback."""
        ...

    def start(self, callback: TickCallback) -> None:
        """Begin invoking `callback` on every tick."""
        ...

    async def stop(self) -> None:
        """Stop ticking and wait for in-flight callbacks."""
        ...


class IntervalTicker:
    """Fires a callback every `interval` seconds on the running event loop.

    Each tick runs the callback as its own task, like a wall-clock interval
    timer: a slow callback does not delay the next tick.

    Args:
        interval: Seconds between ticks.
    """

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._interval = interval
        self._callback: TickCallback | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._in_flight: set[asyncio.Task[Any]] = set()

    @property
    def interval(self) -> float:
        """Seconds between ticks."""
        return self._interval

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, callback: TickCallback) -> None:
        if self.is_running:
            return
        self._callback = callback
        self._loop_task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        assert self._callback is not None
        while True:
            await asyncio.sleep(self._interval)
            task = asyncio.create_task(self._callback())
            self._in_flight.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._in_flight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Tick callback failed", exc_info=task.exception())

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)


class ManualTicker:
    """Ticker advanced explicitly with `tick()`, for tests and embedding."""

    def __init__(self) -> None:
        self._callback: TickCallback | None = None
        self._ticks = 0

    @property
    def is_running(self) -> bool:
        return self._callback is not None

    @property
    def ticks(self) -> int:
        """Number of ticks delivered so far."""
        return self._ticks

    def start(self, callback: TickCallback) -> None:
        self._callback = callback

    async def tick(self, times: int = 1) -> None:
        """Invoke the callback `times` times, awaiting each one.

        Raises:
            RuntimeError: If the ticker has not been started.
        """
        if self._callback is None:
            raise RuntimeError("ManualTicker has not been started")
        for _ in range(times):
            self._ticks += 1
            await self._callback()

    async def stop(self) -> None:
        self._callback = None
