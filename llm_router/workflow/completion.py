"""Terminal phase: decide success, compute metrics and summarize the run."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from . import IntentType, PhaseId, PhaseResult, WorkflowContext, WorkflowResult

logger = logging.getLogger("llm-router.workflow")


@dataclass
class WorkflowMetrics:
    total_time_ms: float
    phase_breakdown: dict[str, float] = field(default_factory=dict)
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_time_ms": self.total_time_ms,
            "phase_breakdown": dict(self.phase_breakdown),
            "success_rate": self.success_rate,
        }


def calculate_metrics(ctx: WorkflowContext, now_ms: float) -> WorkflowMetrics:
    breakdown: dict[str, float] = {}
    succeeded = 0
    history = ctx.phase_history
    for entry in history:
        breakdown[entry.phase.value] = breakdown.get(entry.phase.value, 0.0) + entry.duration_ms
        succeeded += entry.success
    return WorkflowMetrics(
        total_time_ms=now_ms - ctx.start_ms,
        phase_breakdown=breakdown,
        success_rate=succeeded / len(history) if history else 0.0,
    )


def phases_executed(ctx: WorkflowContext) -> list[PhaseId]:
    """Distinct phases in first-execution order."""
    return list(dict.fromkeys(entry.phase for entry in ctx.phase_history))


def determine_success(ctx: WorkflowContext) -> bool:
    if ctx.escalation_required or ctx.cancelled:
        return False
    if ctx.implementation_attempts >= ctx.max_attempts:
        return False

    history = ctx.phase_history
    implementations = [e for e in history if e.phase is PhaseId.IMPLEMENTATION]
    if implementations and implementations[-1].success:
        return True

    if ctx.intent in (IntentType.CONCEPTUAL, IntentType.RESEARCH):
        return any(
            e.success for e in history
            if e.phase in (PhaseId.ASSESSMENT, PhaseId.EXPLORATION)
        )
    return not any(not e.success for e in implementations)


def build_summary(ctx: WorkflowContext, success: bool, metrics: WorkflowMetrics) -> str:
    request = ctx.original_request
    executed = phases_executed(ctx)
    lines = [
        f"## Workflow {'Completed' if success else 'Ended'}",
        "",
        "### Request",
        request[:300] + ("..." if len(request) > 300 else ""),
        "",
        "### Classification",
        f"- **Intent**: {ctx.intent.value if ctx.intent else 'Not classified'}",
        f"- **Complexity**: {ctx.complexity.value if ctx.complexity else 'Not assessed'}",
        "",
        "### Execution Summary",
        f"- **Total Time**: {metrics.total_time_ms / 1000:.2f}s",
        f"- **Phases Executed**: {' -> '.join(p.value for p in executed) or 'none'}",
        f"- **Implementation Attempts**: {ctx.implementation_attempts}",
        f"- **Escalated**: {'Yes' if ctx.escalation_required else 'No'}",
    ]
    if ctx.cancelled:
        lines.append("- **Cancelled**: Yes")

    lines.extend(["", "### Phase Timing"])
    lines.extend(f"- {p.value}: {metrics.phase_breakdown.get(p.value, 0):.0f}ms" for p in executed)

    if ctx.relevant_files:
        lines.extend(["", "### Files Involved"])
        lines.extend(f"- `{f}`" for f in ctx.relevant_files[:10])
        if len(ctx.relevant_files) > 10:
            lines.append(f"... and {len(ctx.relevant_files) - 10} more")

    if ctx.last_implementation_output and not ctx.escalation_required:
        lines.extend(["", "### Result", ctx.last_implementation_output])
    elif ctx.escalation_report:
        lines.extend(["", ctx.escalation_report])
    elif ctx.last_error:
        lines.extend(["", "### Last Error", ctx.last_error])
    return "\n".join(lines)


async def completion_phase(ctx: WorkflowContext, session) -> PhaseResult:
    """Phase 3: terminal."""
    success = determine_success(ctx)
    metrics = calculate_metrics(ctx, session.clock.now_ms())
    logger.info(
        "Workflow finished: success=%s attempts=%d escalated=%s (%.0fms)",
        success, ctx.implementation_attempts, ctx.escalation_required, metrics.total_time_ms,
    )
    return PhaseResult(
        phase=PhaseId.COMPLETION,
        success=success,
        output=build_summary(ctx, success, metrics),
        next_phase=None,
        metadata=metrics.to_dict(),
    )


def context_to_result(
    ctx: WorkflowContext,
    output: str,
    success: bool,
    now_ms: float,
) -> WorkflowResult:
    metrics = calculate_metrics(ctx, now_ms)
    if not output:
        output = build_summary(ctx, success, metrics)
    return WorkflowResult(
        success=success,
        output=output,
        intent=ctx.intent,
        complexity=ctx.complexity,
        phases_executed=phases_executed(ctx),
        total_time_ms=metrics.total_time_ms,
        attempts_made=ctx.implementation_attempts,
        escalated=ctx.escalation_required,
        cancelled=ctx.cancelled,
        metadata={
            "relevant_files": list(ctx.relevant_files),
            "recovery_actions": list(ctx.recovery_actions),
            "phase_breakdown": metrics.phase_breakdown,
            "success_rate": metrics.success_rate,
            "phase_history": [e.to_dict() for e in ctx.phase_history],
            "escalation_report": ctx.escalation_report,
        },
    )
