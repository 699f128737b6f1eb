"""Session context object: owns every piece of mutable router state.

Breaker state, hook statistics and the usage ledger live on a
:class:`RouterSession` rather than in module globals, so independent
sessions can run side by side in one process.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from .backend import ExpertBackend, HttpExpertBackend
from .background import BackgroundTaskManager
from .clock import Clock, SystemClock
from .config import RouterConfig
from .experts import ExpertRegistry, load_experts_file
from .hooks import DispatchResult, EventContext, HookEvent
from .hooks.builtin import register_builtin_hooks
from .hooks.chain import HookDispatcher
from .hooks.loader import load_hooks_from_config
from .recovery import ErrorCategory, RecoveryEngine, RecoveryStrategy, classify_error
from .router import ExpertResponse, FallbackResolver
from .state import JsonStateStore, UsageLedger, load_ledger, save_ledger
from .workflow import PhaseHandler, PhaseId, WorkflowResult
from .workflow.orchestrator import WorkflowOrchestrator

logger = logging.getLogger("llm-router.session")


class RouterSession:
    def __init__(
        self,
        config: RouterConfig | None = None,
        *,
        clock: Clock | None = None,
        backend: ExpertBackend | None = None,
        experts: ExpertRegistry | None = None,
        store: JsonStateStore | None = None,
        dispatcher: HookDispatcher | None = None,
        builtin_hooks: bool = True,
    ) -> None:
        self.config = config if config is not None else RouterConfig()
        self.clock = clock if clock is not None else SystemClock()
        self.store = store
        self.dispatcher = dispatcher if dispatcher is not None else HookDispatcher()
        self.recovery = RecoveryEngine(self.config.recovery, self.clock)

        if experts is None:
            experts = ExpertRegistry.with_defaults()
            if self.config.experts_file is not None:
                load_experts_file(self.config.experts_file, experts)
        self.experts = experts

        if backend is None:
            backend = HttpExpertBackend(self.config.backend, clock=self.clock)
        self.backend = backend

        self.usage = load_ledger(store) if store is not None else UsageLedger()
        self.resolver = FallbackResolver(self.experts, self.backend, self.recovery, self.dispatcher)
        self.background = BackgroundTaskManager(self.resolver, clock=self.clock)

        if builtin_hooks:
            register_builtin_hooks(self.dispatcher, self.recovery, self.usage)
        if self.config.hooks_file is not None:
            count = load_hooks_from_config(self.config.hooks_file, self.dispatcher)
            logger.debug("Loaded %d hooks from %s", count, self.config.hooks_file)

    async def dispatch(self, event: HookEvent, context: EventContext) -> DispatchResult:
        return await self.dispatcher.dispatch(event, context)

    async def resolve_with_fallback(
        self,
        expert_id: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
    ) -> ExpertResponse:
        return await self.resolver.resolve(expert_id, prompt, context)

    async def run_workflow(
        self,
        request: str,
        config_overrides: Mapping[str, Any] | None = None,
        handlers: Mapping[PhaseId, PhaseHandler] | None = None,
    ) -> WorkflowResult:
        orchestrator = WorkflowOrchestrator(self, handlers=handlers)
        return await orchestrator.run(request, config_overrides)

    def classify_error(self, error: str | BaseException) -> ErrorCategory:
        return classify_error(error)

    def get_recovery_strategy(self, category: ErrorCategory | str, attempt_count: int) -> RecoveryStrategy:
        return self.recovery.strategy(ErrorCategory(category), attempt_count)

    def save_usage(self) -> None:
        if self.store is None:
            return
        save_ledger(self.store, self.usage)

    async def aclose(self) -> None:
        self.save_usage()
        close = getattr(self.backend, "aclose", None)
        if close is not None:
            await close()
