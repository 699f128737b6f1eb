"""Expert descriptors and the registry that validates their fallback chains."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator

from .config import load_yaml_file
from .errors import ExpertConfigError, UnknownExpertError

logger = logging.getLogger("llm-router.experts")

MAX_FALLBACKS = 3


@dataclass(frozen=True)
class ExpertDescriptor:
    """A backend responder addressed by a stable id."""
    id: str
    model: str
    fallbacks: tuple[str, ...] = ()
    name: str = ""
    role: str = ""
    temperature: float = 0.2
    max_tokens: int = 4000

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "fallbacks": list(self.fallbacks),
            "name": self.name or self.id,
            "role": self.role,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, expert_id: str, data: dict[str, Any]) -> ExpertDescriptor:
        if not data.get("model"):
            raise ExpertConfigError(f"Expert '{expert_id}' has no model")
        fallbacks = data.get("fallbacks") or ()
        if isinstance(fallbacks, str):
            fallbacks = (fallbacks,)
        return cls(
            id=expert_id,
            model=str(data["model"]),
            fallbacks=tuple(str(f) for f in fallbacks),
            name=data.get("name", ""),
            role=data.get("role", ""),
            temperature=float(data.get("temperature", 0.2)),
            max_tokens=int(data.get("max_tokens", data.get("maxTokens", 4000))),
        )


DEFAULT_EXPERTS: tuple[ExpertDescriptor, ...] = (
    ExpertDescriptor(
        "strategist", "gpt-5", ("researcher", "reviewer"),
        name="Strategist", role="Architecture, design and debugging strategy (read-only)",
        temperature=0.2,
    ),
    ExpertDescriptor(
        "researcher", "claude-sonnet-4-5", ("reviewer", "explorer"),
        name="Researcher", role="Documentation and codebase research",
        temperature=0.1,
    ),
    ExpertDescriptor(
        "reviewer", "gemini-2.5-pro", ("explorer",),
        name="Reviewer", role="Code review and verification",
        temperature=0.1,
    ),
    ExpertDescriptor(
        "frontend", "gemini-2.5-pro", ("writer", "explorer"),
        name="Frontend", role="UI and UX implementation",
        temperature=0.3,
    ),
    ExpertDescriptor(
        "writer", "gemini-2.5-flash", ("explorer",),
        name="Writer", role="Technical writing",
        temperature=0.2,
    ),
    ExpertDescriptor(
        "explorer", "gemini-2.5-flash", (),
        name="Explorer", role="Fast codebase exploration",
        temperature=0.1, max_tokens=2000,
    ),
)


class ExpertRegistry:
    """Static set of experts, validated as they are registered.

    A fallback chain holds at most three candidates, never names its own
    expert and never forms a cycle through other chains.
    """

    def __init__(self) -> None:
        self._experts: dict[str, ExpertDescriptor] = {}

    @classmethod
    def with_defaults(cls) -> ExpertRegistry:
        registry = cls()
        for expert in DEFAULT_EXPERTS:
            registry.register(expert)
        return registry

    def register(self, expert: ExpertDescriptor, replace_existing: bool = False) -> None:
        if expert.id in self._experts and not replace_existing:
            raise ExpertConfigError(f"Expert '{expert.id}' is already registered")
        if len(expert.fallbacks) > MAX_FALLBACKS:
            raise ExpertConfigError(
                f"Expert '{expert.id}' has {len(expert.fallbacks)} fallbacks (max {MAX_FALLBACKS})"
            )
        if expert.id in expert.fallbacks:
            raise ExpertConfigError(f"Expert '{expert.id}' lists itself as a fallback")
        if len(set(expert.fallbacks)) != len(expert.fallbacks):
            raise ExpertConfigError(f"Expert '{expert.id}' has duplicate fallbacks")

        graph = {eid: e.fallbacks for eid, e in self._experts.items()}
        graph[expert.id] = expert.fallbacks
        cycle = _find_cycle(graph, expert.id)
        if cycle:
            raise ExpertConfigError(f"Fallback cycle: {' -> '.join(cycle)}")

        self._experts[expert.id] = expert
        logger.debug("Registered expert %s (%s)", expert.id, expert.model)

    def validate(self) -> None:
        """Check that every fallback names a registered expert."""
        for expert in self._experts.values():
            missing = [f for f in expert.fallbacks if f not in self._experts]
            if missing:
                raise ExpertConfigError(
                    f"Expert '{expert.id}' falls back to unknown expert(s): {', '.join(missing)}"
                )

    def get(self, expert_id: str) -> ExpertDescriptor:
        try:
            return self._experts[expert_id]
        except KeyError:
            raise UnknownExpertError(expert_id) from None

    def candidates(self, expert_id: str) -> list[ExpertDescriptor]:
        """The primary followed by its fallbacks, in order."""
        primary = self.get(expert_id)
        return [primary] + [self.get(f) for f in primary.fallbacks]

    def ids(self) -> list[str]:
        return list(self._experts)

    def __contains__(self, expert_id: object) -> bool:
        return expert_id in self._experts

    def __iter__(self) -> Iterator[ExpertDescriptor]:
        return iter(self._experts.values())

    def __len__(self) -> int:
        return len(self._experts)


def _find_cycle(graph: dict[str, Iterable[str]], start: str) -> list[str] | None:
    """Return the first cycle reachable from ``start``, if any."""
    path: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return path[path.index(node):] + [node]
        if node in done or node not in graph:
            return None
        path.append(node)
        on_path.add(node)
        for nxt in graph[node]:
            found = visit(nxt)
            if found:
                return found
        path.pop()
        on_path.discard(node)
        done.add(node)
        return None

    return visit(start)


def load_experts_file(path: Path, registry: ExpertRegistry | None = None) -> ExpertRegistry:
    """Load expert overrides from YAML on top of ``registry`` (defaults if omitted).

    Format::

        experts:
          strategist:
            model: gpt-5
            fallbacks: [researcher]

    Entries for known ids may give only the fields they change.
    """
    if registry is None:
        registry = ExpertRegistry.with_defaults()
    data = load_yaml_file(path)
    entries = data.get("experts") or {}
    if not isinstance(entries, dict):
        raise ExpertConfigError(f"'experts' in {path} must be a mapping")

    for expert_id, spec in entries.items():
        if not isinstance(spec, dict):
            raise ExpertConfigError(f"Expert '{expert_id}' in {path} must be a mapping")
        if expert_id in registry:
            base = registry.get(expert_id).to_dict()
            base.update(spec)
            expert = ExpertDescriptor.from_dict(expert_id, base)
        else:
            expert = ExpertDescriptor.from_dict(expert_id, spec)
        registry.register(expert, replace_existing=True)

    registry.validate()
    return registry
