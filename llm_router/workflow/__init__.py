"""Phase-based workflow state machine.

A request moves through intent -> assessment -> exploration ->
implementation -> verification -> completion, with recovery looping back to
implementation on failure. Each phase handler returns a :class:`PhaseResult`
naming the next phase; the orchestrator enforces the attempt ceiling,
timeouts and cancellation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..config import WorkflowConfig

if TYPE_CHECKING:
    from ..session import RouterSession


class PhaseId(str, Enum):
    INTENT = "intent"
    ASSESSMENT = "assessment"
    EXPLORATION = "exploration"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    RECOVERY = "recovery"
    COMPLETION = "completion"


class IntentType(str, Enum):
    # Declaration order is the tie-break order for classification
    CONCEPTUAL = "conceptual"
    IMPLEMENTATION = "implementation"
    DEBUGGING = "debugging"
    REFACTORING = "refactoring"
    RESEARCH = "research"
    REVIEW = "review"
    DOCUMENTATION = "documentation"


class ComplexityLevel(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EPIC = "epic"


@dataclass
class PhaseResult:
    phase: PhaseId
    success: bool
    output: str
    next_phase: PhaseId | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PhaseHistoryEntry:
    phase: PhaseId
    start_ms: float
    end_ms: float
    success: bool
    error: str | None = None

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "success": self.success,
            "error": self.error,
        }


@dataclass
class WorkflowContext:
    """Per-request state threaded through the phases.

    ``request`` starts as the original request and may be simplified by
    recovery; ``original_request`` never changes.
    """

    original_request: str
    max_attempts: int
    start_ms: float
    request: str = ""
    intent: IntentType | None = None
    complexity: ComplexityLevel | None = None
    recommended_experts: list[str] = field(default_factory=list)
    relevant_files: list[str] = field(default_factory=list)
    codebase_context: str = ""
    exploration_results: list[str] = field(default_factory=list)
    implementation_attempts: int = 0
    last_error: str | None = None
    last_expert_used: str | None = None
    next_expert: str | None = None
    last_implementation_output: str | None = None
    verification_attempts: int = 0
    verification_failures: list[str] = field(default_factory=list)
    recovery_actions: list[str] = field(default_factory=list)
    escalation_required: bool = False
    escalation_report: str | None = None
    cancelled: bool = False
    config: WorkflowConfig = field(default_factory=WorkflowConfig, repr=False)
    _history: list[PhaseHistoryEntry] = field(default_factory=list, repr=False)

    def __post_init__(self) -> None:
        if not self.request:
            self.request = self.original_request

    @property
    def phase_history(self) -> tuple[PhaseHistoryEntry, ...]:
        return tuple(self._history)

    def record_phase(self, entry: PhaseHistoryEntry) -> None:
        self._history.append(entry)

    def escalate(self, report: str | None = None) -> None:
        self.escalation_required = True
        if report and not self.escalation_report:
            self.escalation_report = report


@dataclass
class WorkflowResult:
    success: bool
    output: str
    intent: IntentType | None
    complexity: ComplexityLevel | None
    phases_executed: list[PhaseId]
    total_time_ms: float
    attempts_made: int
    escalated: bool
    cancelled: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "intent": self.intent.value if self.intent else None,
            "complexity": self.complexity.value if self.complexity else None,
            "phases_executed": [p.value for p in self.phases_executed],
            "total_time_ms": self.total_time_ms,
            "attempts_made": self.attempts_made,
            "escalated": self.escalated,
            "cancelled": self.cancelled,
            "metadata": self.metadata,
        }


PhaseHandler = Callable[[WorkflowContext, "RouterSession"], Awaitable[PhaseResult]]


__all__ = [
    "ComplexityLevel",
    "IntentType",
    "PhaseHandler",
    "PhaseHistoryEntry",
    "PhaseId",
    "PhaseResult",
    "WorkflowContext",
    "WorkflowResult",
]
