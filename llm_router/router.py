"""Expert fallback resolver.

Tries the requested expert, then each expert in its fallback chain, until
one answers. Every attempt goes through the recovery engine, so retries,
backoff and the circuit breaker apply per candidate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

from .backend import ExpertBackend
from .errors import CircuitOpenError, HookBlockedError
from .experts import ExpertRegistry
from .hooks import ErrorContext, ExpertCallContext, ExpertResultContext, HookEvent
from .hooks.chain import HookDispatcher
from .recovery import RecoveryEngine, classify_error, error_message

logger = logging.getLogger("llm-router.router")


@dataclass(frozen=True)
class ExpertResponse:
    response: str
    model: str
    latency_ms: float
    actual_expert: str
    fell_back: bool
    requested_expert: str = ""
    tried: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "response": self.response,
            "model": self.model,
            "latency_ms": self.latency_ms,
            "actual_expert": self.actual_expert,
            "fell_back": self.fell_back,
            "requested_expert": self.requested_expert,
            "tried": list(self.tried),
        }


class FallbackResolver:
    def __init__(
        self,
        registry: ExpertRegistry,
        backend: ExpertBackend,
        engine: RecoveryEngine,
        dispatcher: HookDispatcher,
    ) -> None:
        self.registry = registry
        self.backend = backend
        self.engine = engine
        self.dispatcher = dispatcher

    async def resolve(
        self,
        expert_id: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> ExpertResponse:
        """Call ``expert_id``, falling back along its chain on failure.

        Raises the primary expert's original exception once the chain is
        exhausted, :class:`HookBlockedError` if an expert-call hook vetoes
        the call, and :class:`CircuitOpenError` if the breaker is open.
        """
        candidates = self.registry.candidates(expert_id)
        primary = candidates[0]

        gate = await self.dispatcher.dispatch(
            HookEvent.EXPERT_CALL,
            ExpertCallContext(primary.id, primary.model, prompt, context or {}),
        )
        if gate.blocked:
            raise HookBlockedError(gate.reason, gate.blocked_by)

        primary_error: Exception | None = None
        tried: list[str] = []

        for index, expert in enumerate(candidates):
            has_next = index < len(candidates) - 1
            if index > 0:
                logger.info("Falling back from %s to %s", tried[-1], expert.id)
            tried.append(expert.id)

            try:
                reply = await self.engine.execute(
                    lambda e=expert: self.backend.call(e, prompt, context),
                    label=f"expert {expert.id}",
                    prefer_fallback=has_next,
                )
            except CircuitOpenError:
                logger.warning("Circuit open, abandoning chain for %s after %s", primary.id, tried)
                raise
            except Exception as exc:
                if primary_error is None:
                    primary_error = exc
                category = classify_error(exc)
                fail_fast = self.engine.is_fail_fast(category)
                await self.dispatcher.dispatch(
                    HookEvent.ERROR,
                    ErrorContext(
                        error_message(exc),
                        source="expert",
                        expert_id=expert.id,
                        recoverable=has_next and not fail_fast,
                    ),
                )
                if fail_fast:
                    logger.info("%s error from %s is not fallback-worthy", category.value, expert.id)
                    break
                continue

            fell_back = expert.id != primary.id
            await self.dispatcher.dispatch(
                HookEvent.EXPERT_RESULT,
                ExpertResultContext(
                    expert.id,
                    reply.model,
                    reply.response,
                    duration_ms=reply.latency_ms,
                    fell_back=fell_back,
                ),
            )
            return ExpertResponse(
                response=reply.response,
                model=reply.model,
                latency_ms=reply.latency_ms,
                actual_expert=expert.id,
                fell_back=fell_back,
                requested_expert=primary.id,
                tried=tuple(tried),
            )

        logger.warning("All experts failed for %s (tried %s)", primary.id, ", ".join(tried))
        raise primary_error
