"""
Configuration management for llm-router.

Loads router configuration from ~/.config/llm-router/config.yaml.
Keys may be written in snake_case or camelCase, either nested under their
section (workflow, recovery, backend) or flat at the top level.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import yaml
except ImportError:
    yaml = None  # type: ignore

from .errors import ConfigError

logger = logging.getLogger("llm-router.config")

DEFAULT_PROXY_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 4444
DEFAULT_PROXY_URL = f"http://{DEFAULT_PROXY_HOST}:{DEFAULT_PROXY_PORT}"
DEFAULT_API_KEY = "sk-litellm-proxy"

DEFAULT_PHASE_TIMEOUTS_MS: dict[str, int] = {
    "intent": 30_000,
    "assessment": 300_000,
    "exploration": 300_000,
    "implementation": 600_000,
    "verification": 180_000,
    "recovery": 120_000,
    "completion": 30_000,
}

# Fallback when a phase has no entry in phase_timeouts_ms
DEFAULT_PHASE_TIMEOUT_MS = 60_000

_ALIASES = {
    "phase_timeouts": "phase_timeouts_ms",
    "timeout": "timeout_ms",
}


def _snake(key: str) -> str:
    key = re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()
    return _ALIASES.get(key, key)


def _require_positive(name: str, value: float, allow_zero: bool = False) -> None:
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{name} must be {'>= 0' if allow_zero else '> 0'}, got {value!r}")


@dataclass
class StabilityConfig:
    """Completion debouncing for long-running phases."""
    poll_interval_ms: int = 500
    min_stability_time_ms: int = 5000
    stability_polls_required: int = 3
    phases: tuple[str, ...] = ("verification",)

    def __post_init__(self) -> None:
        _require_positive("poll_interval_ms", self.poll_interval_ms)
        _require_positive("min_stability_time_ms", self.min_stability_time_ms, allow_zero=True)
        _require_positive("stability_polls_required", self.stability_polls_required)


@dataclass
class WorkflowConfig:
    """Workflow orchestration settings."""
    max_attempts: int = 3
    timeout_ms: int = 900_000
    phase_timeouts_ms: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_TIMEOUTS_MS)
    )
    enable_parallel_exploration: bool = True
    max_parallel_exploration: int = 3
    enable_verification: bool = True
    stability: StabilityConfig = field(default_factory=StabilityConfig)

    def __post_init__(self) -> None:
        _require_positive("max_attempts", self.max_attempts)
        _require_positive("timeout_ms", self.timeout_ms)
        _require_positive("max_parallel_exploration", self.max_parallel_exploration)
        for phase, timeout in self.phase_timeouts_ms.items():
            _require_positive(f"phase_timeouts_ms.{phase}", timeout)

    def phase_timeout_ms(self, phase: str) -> int:
        return self.phase_timeouts_ms.get(phase, DEFAULT_PHASE_TIMEOUT_MS)

    def with_overrides(self, overrides: dict[str, Any] | None) -> WorkflowConfig:
        """Return a copy with ``overrides`` (snake_case or camelCase) applied."""
        if not overrides:
            return self
        data: dict[str, Any] = {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}
        data["stability"] = dataclasses.asdict(self.stability)

        for raw_key, value in overrides.items():
            key = _snake(str(raw_key))
            if key == "stability" and isinstance(value, dict):
                data["stability"].update({_snake(str(k)): v for k, v in value.items()})
            elif key in _field_names(StabilityConfig):
                data["stability"][key] = value
            elif key == "phase_timeouts_ms" and isinstance(value, dict):
                data[key] = {**self.phase_timeouts_ms, **value}
            else:
                data[key] = value
        return _build(WorkflowConfig, data)


@dataclass
class RecoveryConfig:
    """Retry, backoff and circuit breaker settings."""
    auto_retry: bool = True
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_ms: int = 60_000
    base_retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 30_000
    error_history_size: int = 50
    fail_fast_categories: tuple[str, ...] = ("invalid_request",)

    def __post_init__(self) -> None:
        _require_positive("circuit_breaker_threshold", self.circuit_breaker_threshold)
        _require_positive("circuit_breaker_reset_ms", self.circuit_breaker_reset_ms, allow_zero=True)
        _require_positive("base_retry_delay_ms", self.base_retry_delay_ms, allow_zero=True)
        _require_positive("max_retry_delay_ms", self.max_retry_delay_ms, allow_zero=True)
        _require_positive("error_history_size", self.error_history_size)


@dataclass
class BackendConfig:
    """Expert backend (OpenAI-compatible proxy) settings."""
    proxy_url: str = DEFAULT_PROXY_URL
    api_key: str = DEFAULT_API_KEY
    timeout_ms: int = 600_000

    def __post_init__(self) -> None:
        _require_positive("backend.timeout_ms", self.timeout_ms)


@dataclass
class RouterConfig:
    """Top-level configuration."""
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    hooks_file: Path | None = None
    experts_file: Path | None = None
    source_path: Path | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], source_path: Path | None = None) -> RouterConfig:
        sections: dict[str, dict[str, Any]] = {"workflow": {}, "recovery": {}, "backend": {}}
        top: dict[str, Any] = {}

        for raw_key, value in (data or {}).items():
            key = _snake(str(raw_key))
            if key in sections:
                if not isinstance(value, dict):
                    raise ConfigError(f"Section '{key}' must be a mapping")
                sections[key].update({_snake(str(k)): v for k, v in value.items()})
            elif key in ("hooks_file", "experts_file"):
                top[key] = Path(os.path.expanduser(str(value))) if value else None
            elif key in _field_names(WorkflowConfig) or key in _field_names(StabilityConfig):
                if key in _field_names(StabilityConfig):
                    sections["workflow"].setdefault("stability", {})[key] = value
                else:
                    sections["workflow"][key] = value
            elif key in _field_names(RecoveryConfig):
                sections["recovery"][key] = value
            else:
                logger.warning("Ignoring unknown config key: %s", raw_key)

        return cls(
            workflow=_build(WorkflowConfig, sections["workflow"]),
            recovery=_build(RecoveryConfig, sections["recovery"]),
            backend=_build(BackendConfig, sections["backend"]),
            source_path=source_path,
            **top,
        )

    def to_dict(self) -> dict[str, Any]:
        def plain(obj: Any) -> Any:
            if dataclasses.is_dataclass(obj):
                return {f.name: plain(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
            if isinstance(obj, (tuple, list)):
                return [plain(v) for v in obj]
            if isinstance(obj, dict):
                return {k: plain(v) for k, v in obj.items()}
            if isinstance(obj, Path):
                return str(obj)
            return obj

        data = plain(self)
        data.pop("source_path", None)
        return data


def _field_names(cls: type) -> set[str]:
    return {f.name for f in dataclasses.fields(cls)}


def _build(cls: type, data: dict[str, Any]) -> Any:
    """Instantiate a config dataclass from a (snake_cased) mapping."""
    kwargs: dict[str, Any] = {}
    defaults = cls()
    for f in dataclasses.fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        default = getattr(defaults, f.name)
        if f.name == "stability":
            if not isinstance(value, dict):
                raise ConfigError("stability must be a mapping")
            value = _build(StabilityConfig, {_snake(str(k)): v for k, v in value.items()})
        elif isinstance(default, tuple):
            value = (value,) if isinstance(value, str) else tuple(value)
        elif isinstance(default, dict):
            if not isinstance(value, dict):
                raise ConfigError(f"{f.name} must be a mapping")
            value = {**default, **{str(k): int(v) for k, v in value.items()}}
        elif isinstance(default, bool):
            value = bool(value)
        elif isinstance(default, int):
            try:
                value = int(value)
            except (TypeError, ValueError):
                raise ConfigError(f"{f.name} must be an integer, got {value!r}") from None
        kwargs[f.name] = value

    for key in data:
        if key not in _field_names(cls):
            logger.warning("Ignoring unknown %s key: %s", cls.__name__, key)

    return cls(**kwargs)


def get_config_dir() -> Path:
    """Get configuration directory.

    Priority order:
    1. $LLM_ROUTER_HOME (if set)
    2. $XDG_CONFIG_HOME/llm-router (if set)
    3. ~/.config/llm-router (default)
    """
    home = os.environ.get("LLM_ROUTER_HOME")
    if home:
        return Path(home)

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / "llm-router"


def get_config_file() -> Path:
    """Get path to the router configuration file."""
    return get_config_dir() / "config.yaml"


def _require_yaml() -> None:
    """Raise error if PyYAML not installed."""
    if yaml is None:
        raise RuntimeError(
            "PyYAML is required for config loading.\n"
            "Install with: pip install pyyaml"
        )


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk, raising ConfigError on bad content."""
    _require_yaml()
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a YAML mapping, got {type(data).__name__}")
    return data


def apply_env_overrides(config: RouterConfig) -> RouterConfig:
    """Apply LLM_ROUTER_PROXY_URL / LLM_ROUTER_API_KEY from the environment."""
    proxy_url = os.environ.get("LLM_ROUTER_PROXY_URL")
    api_key = os.environ.get("LLM_ROUTER_API_KEY")
    if proxy_url:
        config.backend.proxy_url = proxy_url
    if api_key:
        config.backend.api_key = api_key
    return config


def load_config(path: Path | None = None) -> RouterConfig:
    """
    Load router configuration.

    Uses ``path`` when given, otherwise the default config file. A missing
    default file yields the built-in defaults; a missing explicit path is
    an error.
    """
    config_file = path or get_config_file()

    if not config_file.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {path}")
        logger.debug("No config file at %s, using defaults", config_file)
        return apply_env_overrides(RouterConfig())

    logger.debug("Loading config from %s", config_file)
    data = load_yaml_file(config_file)
    return apply_env_overrides(RouterConfig.from_dict(data, source_path=config_file))
