"""Clock abstraction used for backoff, breaker cooldowns and stability polling.

All times are milliseconds. ``SystemClock`` reads the monotonic clock;
``VirtualClock`` only moves when told to, so timing-dependent code can be
tested deterministically.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    def now_ms(self) -> float: ...

    async def sleep_ms(self, ms: float) -> None: ...


class SystemClock:
    """Wall-clock implementation backed by ``time.monotonic``."""

    def now_ms(self) -> float:
        return time.monotonic() * 1000.0

    async def sleep_ms(self, ms: float) -> None:
        await asyncio.sleep(max(ms, 0.0) / 1000.0)


class VirtualClock:
    """Advance-able clock for tests.

    ``sleep_ms`` advances virtual time by the requested amount and yields
    once to the event loop so other tasks get a chance to run.
    """

    def __init__(self, start_ms: float = 0.0) -> None:
        self._now = float(start_ms)
        self.sleeps: list[float] = []

    def now_ms(self) -> float:
        return self._now

    def advance(self, ms: float) -> None:
        if ms < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now += ms

    async def sleep_ms(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.advance(max(ms, 0.0))
        await asyncio.sleep(0)
