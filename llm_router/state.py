"""
State store for llm-router.

Persists opaque JSON documents (usage ledger, daily summaries) in an
XDG-compliant state directory. The orchestration core itself keeps no
durable state; only the ledger is written here.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger("llm-router.state")

LEDGER_DOCUMENT = "usage"


def get_state_dir() -> Path:
    """Get XDG-compliant state directory."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base = Path(xdg_state)
    else:
        base = Path.home() / ".local" / "state"
    return base / "llm-router"


class JsonStateStore:
    """Named JSON documents under one directory."""

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or get_state_dir()

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def load(self, name: str) -> dict[str, Any]:
        """Load a document, returning an empty one if missing or unreadable."""
        path = self.path_for(name)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            logger.warning("Ignoring unreadable state document %s", path, exc_info=True)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, name: str, data: dict[str, Any]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(name)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)


def today() -> str:
    return time.strftime("%Y-%m-%d", time.localtime())


@dataclass
class ExpertUsage:
    """Usage counters for one expert on one day."""
    calls: int = 0
    fallbacks: int = 0
    cached: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.calls if self.calls else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "fallbacks": self.fallbacks,
            "cached": self.cached,
            "total_latency_ms": self.total_latency_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExpertUsage:
        return cls(
            calls=data.get("calls", 0),
            fallbacks=data.get("fallbacks", 0),
            cached=data.get("cached", 0),
            total_latency_ms=data.get("total_latency_ms", 0.0),
        )


@dataclass
class UsageLedger:
    """Per-day, per-expert call accounting."""
    days: dict[str, dict[str, ExpertUsage]] = field(default_factory=dict)

    def record(
        self,
        expert_id: str,
        latency_ms: float,
        fell_back: bool = False,
        cached: bool = False,
        day: str | None = None,
    ) -> ExpertUsage:
        usage = self.days.setdefault(day or today(), {}).setdefault(expert_id, ExpertUsage())
        usage.calls += 1
        usage.total_latency_ms += latency_ms
        if fell_back:
            usage.fallbacks += 1
        if cached:
            usage.cached += 1
        return usage

    def summary(self, day: str | None = None) -> dict[str, Any]:
        """Daily summary: totals plus per-expert counters."""
        experts = self.days.get(day or today(), {})
        calls = sum(u.calls for u in experts.values())
        return {
            "day": day or today(),
            "total_calls": calls,
            "total_fallbacks": sum(u.fallbacks for u in experts.values()),
            "by_expert": {k: v.to_dict() for k, v in sorted(experts.items())},
        }

    def prune(self, keep_days: int) -> int:
        """Drop all but the newest ``keep_days`` days. Returns days removed."""
        stale = sorted(self.days)[:-keep_days] if keep_days > 0 else list(self.days)
        for day in stale:
            del self.days[day]
        return len(stale)

    def to_dict(self) -> dict[str, Any]:
        return {
            day: {expert: u.to_dict() for expert, u in experts.items()}
            for day, experts in self.days.items()
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageLedger:
        days = {}
        for day, experts in data.items():
            if isinstance(experts, dict):
                days[day] = {k: ExpertUsage.from_dict(v) for k, v in experts.items()}
        return cls(days=days)


def load_ledger(store: JsonStateStore) -> UsageLedger:
    return UsageLedger.from_dict(store.load(LEDGER_DOCUMENT))


def save_ledger(store: JsonStateStore, ledger: UsageLedger) -> None:
    store.save(LEDGER_DOCUMENT, ledger.to_dict())
