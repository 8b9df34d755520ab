"""Phase-scoped periodic timers.

Two timers run alongside the main flow:

- Countdown: while STARTED, ticks once per interval with the seconds
  remaining in the price window and fires on_expire at zero.
- WaitingCounter: while CREATED without an opponent, ticks once per
  interval with the seconds waited so far.

Both are asyncio tasks owned by whoever started them and must be
cancelled the moment their governing phase is left, so a timer never
leaks into an unrelated match. A countdown reaching zero is a hint to
attempt the reveal, never proof that the ledger has ended the match.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TickHandler = Callable[[int], None]
ExpireHandler = Callable[[], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]


class _PeriodicTimer:
    def __init__(self, interval: float = 1.0, sleep: Optional[Sleeper] = None) -> None:
        self._interval = interval
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run())
        return self._task

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        raise NotImplementedError


class Countdown(_PeriodicTimer):
    """Counts down the price window from a given number of seconds."""

    def __init__(
        self,
        remaining: int,
        on_tick: Optional[TickHandler] = None,
        on_expire: Optional[ExpireHandler] = None,
        interval: float = 1.0,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        super().__init__(interval, sleep)
        self.remaining = max(0, int(remaining))
        self._on_tick = on_tick
        self._on_expire = on_expire

    async def _run(self) -> None:
        while self.remaining > 0:
            await self._sleep(self._interval)
            self.remaining -= 1
            if self._on_tick is not None:
                self._on_tick(self.remaining)
        logger.debug("Countdown reached zero")
        if self._on_expire is not None:
            await self._on_expire()


class WaitingCounter(_PeriodicTimer):
    """Counts seconds spent waiting for an opponent."""

    def __init__(
        self,
        elapsed: int = 0,
        on_tick: Optional[TickHandler] = None,
        interval: float = 1.0,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        super().__init__(interval, sleep)
        self.elapsed = max(0, int(elapsed))
        self._on_tick = on_tick

    async def _run(self) -> None:
        while True:
            await self._sleep(self._interval)
            self.elapsed += 1
            if self._on_tick is not None:
                self._on_tick(self.elapsed)


def format_clock(seconds: int) -> str:
    """Render seconds as M:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"
