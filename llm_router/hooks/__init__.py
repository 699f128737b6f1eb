"""Lifecycle hook system for llm-router.

Hooks observe lifecycle events (tool calls, expert calls, errors, workflow
phases) and may veto or annotate them. Each event type carries its own
immutable context snapshot. Hooks run in priority order with error
isolation: one failing hook never breaks the cycle for the rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, ClassVar, Mapping, Union


class HookEvent(Enum):
    """Events that hooks can subscribe to."""

    TOOL_CALL = "tool_call"  # Before a tool runs
    TOOL_RESULT = "tool_result"  # After a tool ran
    EXPERT_CALL = "expert_call"  # Before delegating to an expert
    EXPERT_RESULT = "expert_result"  # After an expert answered
    ERROR = "error"  # A backend call or phase failed
    WORKFLOW_START = "workflow_start"
    WORKFLOW_PHASE = "workflow_phase"
    WORKFLOW_END = "workflow_end"


class HookPriority(Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {HookPriority.HIGH: 0, HookPriority.NORMAL: 1, HookPriority.LOW: 2}


class HookDecision(Enum):
    CONTINUE = "continue"
    BLOCK = "block"


@dataclass(frozen=True)
class HookResult:
    """What a single hook returns."""

    decision: HookDecision = HookDecision.CONTINUE
    reason: str | None = None
    inject_message: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def proceed(
        cls,
        inject_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> HookResult:
        return cls(HookDecision.CONTINUE, None, inject_message, dict(metadata or {}))

    @classmethod
    def block(
        cls,
        reason: str,
        inject_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> HookResult:
        return cls(HookDecision.BLOCK, reason, inject_message, dict(metadata or {}))

    @property
    def blocked(self) -> bool:
        return self.decision is HookDecision.BLOCK


@dataclass
class DispatchResult:
    """Aggregated outcome of one dispatch cycle."""

    decision: HookDecision = HookDecision.CONTINUE
    reason: str | None = None
    inject_messages: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    blocked_by: str | None = None
    executed: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.decision is HookDecision.BLOCK


# =============================================================================
# Event contexts
# =============================================================================


class _Frozen:
    """Wrap mapping fields read-only after construction."""

    _mapping_fields: ClassVar[tuple[str, ...]] = ()

    def __post_init__(self) -> None:
        for name in self._mapping_fields:
            value = getattr(self, name)
            object.__setattr__(self, name, MappingProxyType(dict(value or {})))


@dataclass(frozen=True)
class ToolCallContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.TOOL_CALL
    _mapping_fields: ClassVar[tuple[str, ...]] = ("arguments",)

    tool_name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.TOOL_RESULT

    tool_name: str
    success: bool
    output: str = ""
    duration_ms: float = 0.0


@dataclass(frozen=True)
class ExpertCallContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.EXPERT_CALL
    _mapping_fields: ClassVar[tuple[str, ...]] = ("context",)

    expert_id: str
    model: str
    prompt: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpertResultContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.EXPERT_RESULT

    expert_id: str
    model: str
    response: str
    duration_ms: float = 0.0
    cached: bool = False
    fell_back: bool = False


@dataclass(frozen=True)
class ErrorContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.ERROR

    error_message: str
    source: str = "unknown"
    expert_id: str | None = None
    recoverable: bool = True


@dataclass(frozen=True)
class WorkflowStartContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_START

    request: str
    max_attempts: int


@dataclass(frozen=True)
class WorkflowPhaseContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_PHASE

    phase: str
    previous_phase: str | None
    attempt: int
    previous_output: str = ""


@dataclass(frozen=True)
class WorkflowEndContext(_Frozen):
    event: ClassVar[HookEvent] = HookEvent.WORKFLOW_END

    success: bool
    phases_executed: tuple[str, ...]
    total_time_ms: float
    escalated: bool
    output: str = ""


EventContext = Union[
    ToolCallContext,
    ToolResultContext,
    ExpertCallContext,
    ExpertResultContext,
    ErrorContext,
    WorkflowStartContext,
    WorkflowPhaseContext,
    WorkflowEndContext,
]

# Handlers may be sync or async; returning None means "continue".
HookFn = Callable[[Any], Union[HookResult, None, Awaitable[Union[HookResult, None]]]]


@dataclass
class HookDefinition:
    """A registered hook."""

    id: str
    event: HookEvent
    handler: HookFn
    priority: HookPriority = HookPriority.NORMAL
    enabled: bool = True
    name: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if isinstance(self.event, str):
            self.event = HookEvent(self.event)
        if isinstance(self.priority, str):
            self.priority = HookPriority(self.priority)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name or self.id,
            "event": self.event.value,
            "priority": self.priority.value,
            "enabled": self.enabled,
            "description": self.description,
        }


@dataclass
class HookStats:
    executions: int = 0
    blocks: int = 0
    errors: int = 0
    total_duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": self.executions,
            "blocks": self.blocks,
            "errors": self.errors,
            "total_duration_ms": round(self.total_duration_ms, 3),
        }


__all__ = [
    "DispatchResult",
    "ErrorContext",
    "EventContext",
    "ExpertCallContext",
    "ExpertResultContext",
    "HookDecision",
    "HookDefinition",
    "HookEvent",
    "HookFn",
    "HookPriority",
    "HookResult",
    "HookStats",
    "ToolCallContext",
    "ToolResultContext",
    "WorkflowEndContext",
    "WorkflowPhaseContext",
    "WorkflowStartContext",
]
