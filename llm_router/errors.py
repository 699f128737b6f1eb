"""Exception hierarchy for llm-router."""

from __future__ import annotations


class RouterError(Exception):
    """Base class for all llm-router errors."""


class ConfigError(RouterError, ValueError):
    """Invalid configuration value or file."""


class ExpertConfigError(ConfigError):
    """Invalid expert definition (bad fallback chain, duplicate id...)."""


class UnknownExpertError(RouterError, KeyError):
    """Requested expert id is not registered."""

    def __init__(self, expert_id: str) -> None:
        super().__init__(expert_id)
        self.expert_id = expert_id

    def __str__(self) -> str:
        return f"Unknown expert: {self.expert_id}"


class ExpertCallError(RouterError):
    """A backend call to an expert failed."""

    def __init__(
        self,
        message: str,
        expert_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.expert_id = expert_id
        self.status_code = status_code


class CircuitOpenError(RouterError):
    """Raised while the circuit breaker blocks all traffic."""

    def __init__(self, message: str, retry_after_ms: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class HookBlockedError(RouterError):
    """A hook vetoed the event being dispatched."""

    def __init__(self, reason: str | None, hook_id: str | None = None) -> None:
        super().__init__(reason or "Blocked by hook")
        self.reason = reason
        self.hook_id = hook_id


class PhaseTimeoutError(RouterError):
    """A workflow phase exceeded its time budget."""
