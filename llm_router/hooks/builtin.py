"""Built-in hooks: circuit-breaker gate, error annotation, usage tracking and logging.

The hooks close over a session's recovery engine and usage ledger, so each
session gets its own set via :func:`register_builtin_hooks`.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import (
    ErrorContext,
    ExpertCallContext,
    ExpertResultContext,
    HookDefinition,
    HookEvent,
    HookPriority,
    HookResult,
    ToolCallContext,
    ToolResultContext,
)
from ..recovery import FALLBACK_ADVICE

if TYPE_CHECKING:
    from ..recovery import RecoveryEngine
    from ..state import UsageLedger
    from .chain import HookDispatcher

logger = logging.getLogger("llm-router.hooks")

CIRCUIT_GATE_ID = "builtin_circuit_breaker_gate"
ERROR_ANNOTATOR_ID = "builtin_error_annotator"
TOOL_SUCCESS_ID = "builtin_tool_success_tracker"
USAGE_TRACKER_ID = "builtin_usage_tracker"
LOG_EXPERT_CALL_ID = "builtin_log_expert_call"
LOG_EXPERT_RESULT_ID = "builtin_log_expert_result"

# Expert-call failures are already counted by RecoveryEngine.execute
_SELF_RECORDED_SOURCES = frozenset({"expert"})


def make_circuit_gate(engine: RecoveryEngine):
    def circuit_gate(ctx: ToolCallContext) -> HookResult:
        if engine.breaker.is_open():
            return HookResult.block(
                engine.cooldown_message(),
                metadata={
                    "circuit_breaker_active": True,
                    "retry_after_ms": engine.breaker.remaining_ms(),
                },
            )
        return HookResult.proceed()

    return circuit_gate


def make_error_annotator(engine: RecoveryEngine):
    def annotate_error(ctx: ErrorContext) -> HookResult:
        decision = engine.on_error(
            ctx.error_message,
            record=ctx.source not in _SELF_RECORDED_SOURCES,
        )
        if decision.circuit_open:
            return HookResult.block(
                engine.cooldown_message(),
                metadata={
                    "circuit_breaker_active": True,
                    "consecutive_errors": decision.consecutive_errors,
                    "retry_after_ms": decision.retry_after_ms,
                },
            )

        strategy = decision.strategy
        lines = [
            f"**{strategy.user_message}**",
            "",
            f"- Error type: {decision.category.value}",
            f"- Consecutive errors: {decision.consecutive_errors}",
        ]
        if strategy.should_retry and engine.config.auto_retry:
            lines.append(f"- Retrying in: {strategy.retry_delay_ms / 1000:g}s")
        if strategy.fallback_action:
            lines += ["", f"Suggestion: {FALLBACK_ADVICE[strategy.fallback_action]}"]

        metadata = {
            "error_category": decision.category.value,
            "strategy": strategy.to_dict(),
            "consecutive_errors": decision.consecutive_errors,
        }
        if strategy.should_retry:
            return HookResult.proceed("\n".join(lines), metadata)
        return HookResult.block(strategy.user_message, "\n".join(lines), metadata)

    return annotate_error


def make_tool_success_tracker(engine: RecoveryEngine):
    def track_tool_success(ctx: ToolResultContext) -> None:
        if ctx.success:
            engine.record_success()

    return track_tool_success


def make_usage_tracker(ledger: UsageLedger):
    def track_usage(ctx: ExpertResultContext) -> None:
        ledger.record(ctx.expert_id, ctx.duration_ms, fell_back=ctx.fell_back, cached=ctx.cached)

    return track_usage


def log_expert_call(ctx: ExpertCallContext) -> None:
    """Log outgoing expert call summary."""
    logger.info("[REQ] %s (%s) | %d chars", ctx.expert_id, ctx.model, len(ctx.prompt))


def log_expert_result(ctx: ExpertResultContext) -> None:
    """Log expert response summary."""
    flags = []
    if ctx.fell_back:
        flags.append("fallback")
    if ctx.cached:
        flags.append("cached")
    logger.info(
        "[RESP] %s (%s) | %.0fms | %d chars%s",
        ctx.expert_id, ctx.model, ctx.duration_ms, len(ctx.response),
        f" | {','.join(flags)}" if flags else "",
    )


def register_builtin_hooks(
    dispatcher: HookDispatcher,
    engine: RecoveryEngine,
    ledger: UsageLedger | None = None,
) -> list[str]:
    """Register the built-in hooks for one session. Returns their ids."""
    hooks = [
        HookDefinition(
            id=CIRCUIT_GATE_ID,
            event=HookEvent.TOOL_CALL,
            handler=make_circuit_gate(engine),
            priority=HookPriority.HIGH,
            name="Circuit Breaker Gate",
            description="Blocks tool calls while the circuit breaker is open",
        ),
        HookDefinition(
            id=ERROR_ANNOTATOR_ID,
            event=HookEvent.ERROR,
            handler=make_error_annotator(engine),
            priority=HookPriority.HIGH,
            name="Error Annotator",
            description="Classifies errors and attaches the recovery strategy",
        ),
        HookDefinition(
            id=TOOL_SUCCESS_ID,
            event=HookEvent.TOOL_RESULT,
            handler=make_tool_success_tracker(engine),
            priority=HookPriority.LOW,
            name="Tool Success Tracker",
            description="Resets the error streak on successful tool results",
        ),
        HookDefinition(
            id=LOG_EXPERT_CALL_ID,
            event=HookEvent.EXPERT_CALL,
            handler=log_expert_call,
            priority=HookPriority.LOW,
            name="Expert Call Logger",
        ),
        HookDefinition(
            id=LOG_EXPERT_RESULT_ID,
            event=HookEvent.EXPERT_RESULT,
            handler=log_expert_result,
            priority=HookPriority.LOW,
            name="Expert Result Logger",
        ),
    ]
    if ledger is not None:
        hooks.append(
            HookDefinition(
                id=USAGE_TRACKER_ID,
                event=HookEvent.EXPERT_RESULT,
                handler=make_usage_tracker(ledger),
                priority=HookPriority.LOW,
                name="Usage Tracker",
                description="Records per-expert usage in the ledger",
            )
        )

    for hook in hooks:
        dispatcher.register(hook)
    return [h.id for h in hooks]
