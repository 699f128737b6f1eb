"""Drives a request through the workflow phases.

The orchestrator owns the transition loop: it counts implementation
attempts, enforces the attempt ceiling and the overall timeout, bounds each
phase with its own timeout and honours cancellation. Phase handlers only
suggest the next phase.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Mapping

from . import PhaseHandler, PhaseHistoryEntry, PhaseId, PhaseResult, WorkflowContext, WorkflowResult
from .completion import completion_phase, context_to_result
from .intent import intent_phase
from .phases import (
    assessment_phase,
    exploration_phase,
    implementation_phase,
    recovery_phase,
    verification_phase,
)
from .stability import StabilityPoller
from ..config import WorkflowConfig
from ..hooks import (
    ErrorContext,
    HookEvent,
    WorkflowEndContext,
    WorkflowPhaseContext,
    WorkflowStartContext,
)
from ..errors import PhaseTimeoutError
from ..recovery import error_message

if TYPE_CHECKING:
    from ..session import RouterSession

logger = logging.getLogger("llm-router.workflow")

DEFAULT_HANDLERS: dict[PhaseId, PhaseHandler] = {
    PhaseId.INTENT: intent_phase,
    PhaseId.ASSESSMENT: assessment_phase,
    PhaseId.EXPLORATION: exploration_phase,
    PhaseId.IMPLEMENTATION: implementation_phase,
    PhaseId.VERIFICATION: verification_phase,
    PhaseId.RECOVERY: recovery_phase,
    PhaseId.COMPLETION: completion_phase,
}


class WorkflowOrchestrator:
    """Runs one workflow at a time for a session.

    ``handlers`` may replace individual phase handlers.
    """

    def __init__(
        self,
        session: RouterSession,
        config: WorkflowConfig | None = None,
        handlers: Mapping[PhaseId, PhaseHandler] | None = None,
    ) -> None:
        self.session = session
        self.config = config or session.config.workflow
        self.handlers: dict[PhaseId, PhaseHandler] = {**DEFAULT_HANDLERS, **(handlers or {})}
        self.context: WorkflowContext | None = None
        self._cancelled = False
        self._current: asyncio.Task | None = None

    @property
    def clock(self):
        return self.session.clock

    def cancel(self) -> None:
        """Stop the running workflow; no further phase is entered."""
        self._cancelled = True
        if self.context is not None:
            self.context.cancelled = True
            self.context.escalate("Workflow cancelled")
        if self._current is not None and not self._current.done():
            self._current.cancel()
        logger.info("Workflow cancelled")

    async def run(
        self,
        request: str,
        config_overrides: Mapping[str, Any] | None = None,
    ) -> WorkflowResult:
        config = self.config.with_overrides(dict(config_overrides) if config_overrides else None)
        self._cancelled = False
        ctx = WorkflowContext(
            original_request=request,
            max_attempts=config.max_attempts,
            start_ms=self.clock.now_ms(),
            config=config,
        )
        self.context = ctx
        logger.info("Starting workflow: %s", request[:100])

        try:
            gate = await self.session.dispatch(
                HookEvent.WORKFLOW_START,
                WorkflowStartContext(request, config.max_attempts),
            )
            if gate.blocked:
                reason = f"Workflow blocked by hook {gate.blocked_by}: {gate.reason}"
                logger.warning(reason)
                ctx.escalate(reason)
                result = context_to_result(ctx, reason, False, self.clock.now_ms())
            else:
                result = await self._loop(ctx, config)
        except Exception as e:
            message = error_message(e)
            logger.error("Workflow execution failed: %s", message, exc_info=True)
            ctx.escalate(f"Workflow failed: {message}")
            result = context_to_result(ctx, f"Workflow failed: {message}", False, self.clock.now_ms())
            await self.session.dispatch(
                HookEvent.ERROR,
                ErrorContext(message, source="workflow", recoverable=False),
            )

        await self.session.dispatch(
            HookEvent.WORKFLOW_END,
            WorkflowEndContext(
                success=result.success,
                phases_executed=tuple(p.value for p in result.phases_executed),
                total_time_ms=result.total_time_ms,
                escalated=result.escalated,
                output=result.output[:1000],
            ),
        )
        return result

    async def _loop(self, ctx: WorkflowContext, config: WorkflowConfig) -> WorkflowResult:
        phase: PhaseId | None = PhaseId.INTENT
        previous: PhaseId | None = None
        last_output = ""
        completed: PhaseResult | None = None

        while phase is not None and not self._cancelled:
            if phase is PhaseId.IMPLEMENTATION:
                ctx.implementation_attempts += 1

            gate = await self.session.dispatch(
                HookEvent.WORKFLOW_PHASE,
                WorkflowPhaseContext(
                    phase.value,
                    previous.value if previous else None,
                    ctx.implementation_attempts,
                    last_output[:500],
                ),
            )
            if gate.blocked:
                message = f"Phase {phase.value} blocked by hook {gate.blocked_by}: {gate.reason}"
                now = self.clock.now_ms()
                ctx.record_phase(PhaseHistoryEntry(phase, now, now, False, message))
                ctx.last_error = message
                ctx.escalate(message)
                logger.warning(message)
                break

            if self._cancelled:
                now = self.clock.now_ms()
                ctx.record_phase(PhaseHistoryEntry(phase, now, now, False, "Cancelled"))
                break

            started = self.clock.now_ms()
            try:
                result = await self._execute_phase(ctx, config, phase)
            except asyncio.CancelledError:
                if not self._cancelled:
                    raise
                ctx.record_phase(PhaseHistoryEntry(phase, started, self.clock.now_ms(), False, "Cancelled"))
                break
            except Exception as e:
                message = error_message(e)
                ctx.record_phase(PhaseHistoryEntry(phase, started, self.clock.now_ms(), False, message))
                ctx.last_error = message
                ctx.escalate(f"Phase {phase.value} failed: {message}")
                logger.error("Phase %s failed: %s", phase.value, message)
                break

            ctx.record_phase(PhaseHistoryEntry(phase, started, self.clock.now_ms(), result.success))
            logger.info(
                "Phase %s %s -> %s",
                phase.value,
                "succeeded" if result.success else "failed",
                result.next_phase.value if result.next_phase else "end",
            )

            last_output = result.output
            previous, phase = phase, result.next_phase
            if previous is PhaseId.COMPLETION:
                completed = result
                break

            if phase is PhaseId.IMPLEMENTATION and ctx.implementation_attempts >= ctx.max_attempts:
                logger.warning("Attempt limit %d reached, escalating", ctx.max_attempts)
                ctx.escalate(f"Maximum attempts ({ctx.max_attempts}) reached")
                phase = PhaseId.COMPLETION

            elapsed = self.clock.now_ms() - ctx.start_ms
            if phase not in (None, PhaseId.COMPLETION) and elapsed > config.timeout_ms:
                logger.warning("Workflow timeout after %.0fms (limit %dms)", elapsed, config.timeout_ms)
                ctx.escalate(f"Workflow timed out after {elapsed:.0f}ms")
                phase = PhaseId.COMPLETION

        now = self.clock.now_ms()
        if completed is None:
            return context_to_result(ctx, "", False, now)
        success = completed.success and not ctx.cancelled
        return context_to_result(ctx, completed.output, success, now)

    async def _execute_phase(
        self,
        ctx: WorkflowContext,
        config: WorkflowConfig,
        phase: PhaseId,
    ) -> PhaseResult:
        handler = self.handlers.get(phase)
        if handler is None:
            raise KeyError(f"No handler for phase: {phase.value}")

        work = handler(ctx, self.session)
        if phase.value in config.stability.phases:
            work = StabilityPoller(config.stability, self.clock).settle(work, label=phase.value)

        timeout_ms = config.phase_timeout_ms(phase.value)
        self._current = asyncio.ensure_future(asyncio.wait_for(work, timeout_ms / 1000.0))
        try:
            return await self._current
        except asyncio.TimeoutError:
            raise PhaseTimeoutError(f"Phase {phase.value} timed out after {timeout_ms}ms") from None
        finally:
            self._current = None
