"""Hook dispatcher with priority ordering, veto and error isolation."""

from __future__ import annotations

import inspect
import itertools
import logging
import time
from typing import Any

from . import (
    DispatchResult,
    EventContext,
    HookDecision,
    HookDefinition,
    HookEvent,
    HookResult,
    HookStats,
)

logger = logging.getLogger("llm-router.hooks")


class HookDispatcher:
    """Registry of hooks and the dispatch loop that folds their results.

    Hooks bound to an event run high before normal before low, and in
    registration order within a tier. The first ``block`` stops the cycle.
    A hook that raises is logged and counted, and the cycle continues as if
    it had returned ``continue``.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, HookDefinition] = {}
        self._order: dict[str, int] = {}
        self._seq = itertools.count()
        self._stats: dict[str, HookStats] = {}
        self.enabled = True
        self.dispatch_count = 0

    def register(self, hook: HookDefinition) -> None:
        """Register a hook, replacing any hook with the same id in place."""
        if hook.id in self._hooks:
            logger.debug("Replacing hook: %s", hook.id)
        else:
            self._order[hook.id] = next(self._seq)
            self._stats[hook.id] = HookStats()
        self._hooks[hook.id] = hook
        logger.debug("Registered hook: %s for %s", hook.id, hook.event.value)

    def unregister(self, hook_id: str) -> bool:
        if self._hooks.pop(hook_id, None) is None:
            return False
        self._order.pop(hook_id, None)
        self._stats.pop(hook_id, None)
        logger.debug("Unregistered hook: %s", hook_id)
        return True

    def set_enabled(self, hook_id: str, enabled: bool) -> bool:
        hook = self._hooks.get(hook_id)
        if hook is None:
            return False
        hook.enabled = enabled
        return True

    def get(self, hook_id: str) -> HookDefinition | None:
        return self._hooks.get(hook_id)

    def hooks_for(self, event: HookEvent) -> list[HookDefinition]:
        """Enabled hooks bound to ``event``, in dispatch order."""
        hooks = [h for h in self._hooks.values() if h.event is event and h.enabled]
        hooks.sort(key=lambda h: (h.priority.rank, self._order[h.id]))
        return hooks

    def list_hooks(self, event: HookEvent | None = None) -> list[HookDefinition]:
        """All registered hooks (enabled or not), optionally filtered by event."""
        hooks = [h for h in self._hooks.values() if event is None or h.event is event]
        hooks.sort(key=lambda h: (h.event.value, h.priority.rank, self._order[h.id]))
        return hooks

    async def dispatch(self, event: HookEvent, context: EventContext) -> DispatchResult:
        """Run the hooks bound to ``event`` and aggregate their results."""
        expected = getattr(context, "event", None)
        if expected is not event:
            raise ValueError(
                f"Context {type(context).__name__} does not belong to event {event.value}"
            )

        result = DispatchResult()
        if not self.enabled:
            return result
        self.dispatch_count += 1

        for hook in self.hooks_for(event):
            # An earlier hook may have unregistered or disabled this one
            current = self._hooks.get(hook.id)
            if current is not hook or not hook.enabled:
                continue
            stats = self._stats[hook.id]
            start = time.perf_counter()
            try:
                outcome = hook.handler(context)
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            except Exception:
                stats.errors += 1
                logger.error("Hook %s failed", hook.id, exc_info=True)
                # Continue dispatch; a broken hook counts as "continue"
                continue
            finally:
                stats.executions += 1
                stats.total_duration_ms += (time.perf_counter() - start) * 1000.0

            result.executed.append(hook.id)
            if outcome is None:
                continue
            if not isinstance(outcome, HookResult):
                logger.warning(
                    "Hook %s returned %s, expected HookResult; ignoring",
                    hook.id, type(outcome).__name__,
                )
                continue

            if outcome.inject_message:
                result.inject_messages.append(outcome.inject_message)
            result.metadata.update(outcome.metadata)

            if outcome.decision is HookDecision.BLOCK:
                stats.blocks += 1
                result.decision = HookDecision.BLOCK
                result.reason = outcome.reason
                result.blocked_by = hook.id
                logger.info("Hook %s blocked %s: %s", hook.id, event.value, outcome.reason)
                break

        return result

    def stats(self, hook_id: str | None = None) -> dict[str, Any]:
        """Per-hook statistics, or system-wide counts when no id is given."""
        if hook_id is not None:
            stats = self._stats.get(hook_id)
            return stats.to_dict() if stats else {}

        per_event = {e.value: 0 for e in HookEvent}
        for hook in self._hooks.values():
            per_event[hook.event.value] += 1
        return {
            "enabled": self.enabled,
            "total_hooks": len(self._hooks),
            "enabled_hooks": sum(1 for h in self._hooks.values() if h.enabled),
            "dispatches": self.dispatch_count,
            "hooks_by_event": per_event,
            "hooks": {hid: s.to_dict() for hid, s in self._stats.items()},
        }

    def clear(self) -> None:
        self._hooks.clear()
        self._order.clear()
        self._stats.clear()
        self.dispatch_count = 0
