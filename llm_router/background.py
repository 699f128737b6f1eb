"""Fire-and-forget expert calls with per-model and per-provider concurrency limits.

Tasks that cannot start immediately wait in a FIFO queue. Cancelling a
pending task marks it cancelled at once; cancelling a running task marks it
cancelled and cancels its asyncio task, best effort.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .clock import Clock, SystemClock
from .errors import UnknownExpertError
from .router import FallbackResolver

logger = logging.getLogger("llm-router.background")

DEFAULT_PROVIDER_LIMIT = 5
DEFAULT_MAX_AGE_MS = 3_600_000


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"

    @property
    def finished(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


def provider_for(model: str) -> str:
    """Best-effort provider name from a model id."""
    lowered = model.lower()
    if "gpt" in lowered or "openai" in lowered:
        return "openai"
    if "claude" in lowered or "anthropic" in lowered:
        return "anthropic"
    return "google"


@dataclass
class BackgroundTask:
    id: str
    expert_id: str
    model: str
    prompt: str
    context: Mapping[str, Any] | None = None
    status: TaskStatus = TaskStatus.PENDING
    started_at_ms: float = 0.0
    completed_at_ms: float | None = None
    result: str | None = None
    actual_expert: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "expert_id": self.expert_id,
            "model": self.model,
            "status": self.status.value,
            "started_at_ms": self.started_at_ms,
            "completed_at_ms": self.completed_at_ms,
            "result": self.result,
            "actual_expert": self.actual_expert,
            "error": self.error,
        }


@dataclass(frozen=True)
class TaskResult:
    status: TaskStatus
    result: str | None = None
    error: str | None = None


@dataclass
class ConcurrencyLimits:
    default: int = DEFAULT_PROVIDER_LIMIT
    by_provider: dict[str, int] = field(default_factory=dict)
    by_model: dict[str, int] = field(default_factory=dict)


class BackgroundTaskManager:
    def __init__(
        self,
        resolver: FallbackResolver,
        limits: ConcurrencyLimits | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.resolver = resolver
        self.limits = limits or ConcurrencyLimits()
        self.clock = clock or SystemClock()
        self._tasks: dict[str, BackgroundTask] = {}
        self._handles: dict[str, asyncio.Task] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._queue: deque[str] = deque()
        self._running_by_model: dict[str, int] = {}
        self._running_by_provider: dict[str, int] = {}

    # -- concurrency ---------------------------------------------------------

    def _can_start(self, model: str) -> bool:
        model_limit = self.limits.by_model.get(model)
        if model_limit is not None and self._running_by_model.get(model, 0) >= model_limit:
            return False
        provider = provider_for(model)
        provider_limit = self.limits.by_provider.get(provider, self.limits.default)
        return self._running_by_provider.get(provider, 0) < provider_limit

    def _acquire(self, model: str) -> None:
        provider = provider_for(model)
        self._running_by_model[model] = self._running_by_model.get(model, 0) + 1
        self._running_by_provider[provider] = self._running_by_provider.get(provider, 0) + 1

    def _release(self, model: str) -> None:
        provider = provider_for(model)
        self._running_by_model[model] = max(0, self._running_by_model.get(model, 1) - 1)
        self._running_by_provider[provider] = max(0, self._running_by_provider.get(provider, 1) - 1)

    def _process_queue(self) -> None:
        while self._queue:
            task = self._tasks.get(self._queue[0])
            if task is None or task.status is not TaskStatus.PENDING:
                self._queue.popleft()
                continue
            if not self._can_start(task.model):
                break
            self._queue.popleft()
            self._launch(task)

    # -- lifecycle -------------------------------------------------------------

    def start(
        self,
        expert_id: str,
        prompt: str,
        context: Mapping[str, Any] | None = None,
        task_id: str | None = None,
    ) -> BackgroundTask:
        """Schedule an expert call. Must be called from a running event loop."""
        if expert_id not in self.resolver.registry:
            raise UnknownExpertError(expert_id)
        task_id = task_id or str(uuid.uuid4())
        if task_id in self._tasks:
            raise ValueError(f"Task id already in use: {task_id}")

        model = self.resolver.registry.get(expert_id).model
        task = BackgroundTask(
            id=task_id,
            expert_id=expert_id,
            model=model,
            prompt=prompt,
            context=context,
            started_at_ms=self.clock.now_ms(),
        )
        self._tasks[task_id] = task
        self._done[task_id] = asyncio.Event()

        if self._can_start(model):
            self._launch(task)
        else:
            self._queue.append(task_id)
            logger.debug("Task %s queued, waiting for capacity", task_id)
        return task

    def _launch(self, task: BackgroundTask) -> None:
        self._acquire(task.model)
        task.status = TaskStatus.RUNNING
        handle = asyncio.get_running_loop().create_task(self._execute(task))
        handle.add_done_callback(lambda _, t=task: self._finish(t))
        self._handles[task.id] = handle
        logger.info("Background task %s started (%s)", task.id, task.expert_id)

    async def _execute(self, task: BackgroundTask) -> None:
        try:
            response = await self.resolver.resolve(task.expert_id, task.prompt, task.context)
        except asyncio.CancelledError:
            task.status = TaskStatus.CANCELLED
            task.completed_at_ms = self.clock.now_ms()
            raise
        except Exception as e:
            if task.status is not TaskStatus.CANCELLED:
                task.status = TaskStatus.FAILED
                task.error = str(e) or type(e).__name__
                task.completed_at_ms = self.clock.now_ms()
                logger.error("Background task %s failed: %s", task.id, task.error)
        else:
            if task.status is not TaskStatus.CANCELLED:
                task.status = TaskStatus.COMPLETED
                task.result = response.response
                task.actual_expert = response.actual_expert
                task.completed_at_ms = self.clock.now_ms()
                logger.info("Background task %s completed (%.0fms)", task.id, response.latency_ms)

    def _finish(self, task: BackgroundTask) -> None:
        # Runs even when the task was cancelled before its first step
        if task.status is TaskStatus.RUNNING:
            task.status = TaskStatus.CANCELLED
            task.completed_at_ms = self.clock.now_ms()
        self._release(task.model)
        self._handles.pop(task.id, None)
        done = self._done.get(task.id)
        if done is not None:
            done.set()
        self._process_queue()

    def cancel(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status.finished:
            return False

        was_running = task.status is TaskStatus.RUNNING
        task.status = TaskStatus.CANCELLED
        task.completed_at_ms = self.clock.now_ms()
        if was_running:
            handle = self._handles.get(task_id)
            if handle is not None:
                handle.cancel()
        else:
            try:
                self._queue.remove(task_id)
            except ValueError:
                pass
            self._done[task_id].set()
        logger.info("Task %s cancelled", task_id)
        return True

    async def wait(self, task_id: str) -> TaskResult:
        """Wait for a task to finish and return its result."""
        done = self._done.get(task_id)
        if done is not None:
            await done.wait()
        return self.get_result(task_id)

    # -- queries -------------------------------------------------------------

    def get(self, task_id: str) -> BackgroundTask | None:
        return self._tasks.get(task_id)

    def get_result(self, task_id: str) -> TaskResult:
        task = self._tasks.get(task_id)
        if task is None:
            return TaskResult(TaskStatus.NOT_FOUND)
        return TaskResult(task.status, task.result, task.error)

    def list(self, status: TaskStatus | None = None) -> list[BackgroundTask]:
        return [t for t in self._tasks.values() if status is None or t.status is status]

    def cleanup_old_tasks(self, max_age_ms: float = DEFAULT_MAX_AGE_MS) -> int:
        now = self.clock.now_ms()
        stale = [
            tid for tid, t in self._tasks.items()
            if t.status.finished and now - t.started_at_ms > max_age_ms
        ]
        for tid in stale:
            del self._tasks[tid]
            self._done.pop(tid, None)
        if stale:
            logger.info("Cleaned up %d old tasks", len(stale))
        return len(stale)

    def stats(self) -> dict[str, Any]:
        counts = {s.value: 0 for s in TaskStatus if s is not TaskStatus.NOT_FOUND}
        for t in self._tasks.values():
            counts[t.status.value] += 1
        return {
            "total": len(self._tasks),
            **counts,
            "queue_length": len(self._queue),
            "concurrency": {
                "by_provider": dict(self._running_by_provider),
                "by_model": dict(self._running_by_model),
            },
        }
