"""Completion debouncing for long-running phases.

A phase running under :class:`StabilityPoller` is sampled every
``poll_interval_ms``. Its result is only accepted after the same completion
fingerprint has been seen ``stability_polls_required`` times in a row and at
least ``min_stability_time_ms`` have passed since the first sample.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable

from ..clock import Clock
from ..config import StabilityConfig
from . import PhaseResult

logger = logging.getLogger("llm-router.workflow")


def result_fingerprint(result: PhaseResult) -> Hashable:
    return (result.success, result.next_phase, len(result.output))


class StabilityTracker:
    """Pure sampling state, fed one observation per poll.

    ``None`` means "not complete yet" and breaks the streak.
    """

    def __init__(self, polls_required: int, min_stability_time_ms: float) -> None:
        self.polls_required = polls_required
        self.min_stability_time_ms = min_stability_time_ms
        self.first_sample_ms: float | None = None
        self.stable_polls = 0
        self.samples = 0
        self._last: Hashable | None = None

    def observe(self, fingerprint: Hashable | None, now_ms: float) -> bool:
        """Record one sample; return True once completion may be accepted."""
        self.samples += 1
        if self.first_sample_ms is None:
            self.first_sample_ms = now_ms

        if fingerprint is None:
            self.stable_polls = 0
            self._last = None
            return False

        if self.stable_polls and fingerprint == self._last:
            self.stable_polls += 1
        else:
            self.stable_polls = 1
            self._last = fingerprint

        return (
            self.stable_polls >= self.polls_required
            and now_ms - self.first_sample_ms >= self.min_stability_time_ms
        )


class StabilityPoller:
    def __init__(self, config: StabilityConfig, clock: Clock) -> None:
        self.config = config
        self.clock = clock

    async def settle(
        self,
        awaitable: Awaitable[PhaseResult],
        fingerprint: Callable[[PhaseResult], Hashable] = result_fingerprint,
        label: str = "phase",
    ) -> PhaseResult:
        """Run ``awaitable`` and return its result once it has settled.

        Exceptions from the phase propagate at the first poll that sees them.
        Cancelling the caller cancels the phase.
        """
        tracker = StabilityTracker(
            self.config.stability_polls_required,
            self.config.min_stability_time_ms,
        )
        task: asyncio.Task[Any] = asyncio.ensure_future(awaitable)
        try:
            while True:
                await self.clock.sleep_ms(self.config.poll_interval_ms)
                if not task.done():
                    tracker.observe(None, self.clock.now_ms())
                    continue

                result = task.result()
                if tracker.observe(fingerprint(result), self.clock.now_ms()):
                    logger.debug(
                        "%s stable after %d samples (%d consecutive)",
                        label, tracker.samples, tracker.stable_polls,
                    )
                    return result
        finally:
            if not task.done():
                task.cancel()
