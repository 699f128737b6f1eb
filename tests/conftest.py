"""Shared fixtures: a scripted expert backend and a session on virtual time."""

from __future__ import annotations

import pytest

from llm_router.backend import BackendResponse
from llm_router.clock import VirtualClock
from llm_router.config import RecoveryConfig, RouterConfig
from llm_router.session import RouterSession

DEFAULT_REPLY = (
    "## Approach\nUse the existing cache module and extend it.\n\n"
    "## Code\nThe change is small and self-contained."
)

PASSING_REVIEW = (
    "VERIFICATION_RESULT: PASS\n\nISSUES_FOUND:\nNone\n\nCONFIDENCE: HIGH\nLooks right."
)

FAILING_REVIEW = (
    "VERIFICATION_RESULT: FAIL\n\nISSUES_FOUND:\n- Missing edge case\n\nCONFIDENCE: MEDIUM"
)


class FakeBackend:
    """Expert backend driven by a per-expert script.

    A script entry is either a single item used for every call, or a list
    consumed in order whose last item repeats. Items are reply strings,
    exceptions to raise, or callables taking the prompt.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls: list[tuple[str, str]] = []

    def _next(self, expert_id: str):
        if expert_id not in self.script:
            return PASSING_REVIEW if expert_id == "reviewer" else DEFAULT_REPLY
        item = self.script[expert_id]
        if isinstance(item, list):
            return item.pop(0) if len(item) > 1 else item[0]
        return item

    async def call(self, expert, prompt, context=None):
        self.calls.append((expert.id, prompt))
        item = self._next(expert.id)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(prompt)
        return BackendResponse(item, expert.model, 12.0)

    def called(self) -> list[str]:
        return [expert_id for expert_id, _ in self.calls]


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def config():
    # High threshold so multi-expert chains do not trip the breaker mid-test
    return RouterConfig(recovery=RecoveryConfig(circuit_breaker_threshold=50))


@pytest.fixture
def session(config, clock, backend):
    return RouterSession(config, clock=clock, backend=backend)
