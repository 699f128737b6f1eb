"""Tests for configuration loading."""

from __future__ import annotations

import pytest

from llm_router.config import (
    DEFAULT_PHASE_TIMEOUT_MS,
    RouterConfig,
    StabilityConfig,
    WorkflowConfig,
    get_config_dir,
    get_config_file,
    load_config,
)
from llm_router.errors import ConfigError


class TestDefaults:
    def test_workflow_defaults(self):
        config = WorkflowConfig()
        assert config.max_attempts == 3
        assert config.timeout_ms == 900_000
        assert config.phase_timeout_ms("implementation") == 600_000
        assert config.phase_timeout_ms("made_up") == DEFAULT_PHASE_TIMEOUT_MS
        assert config.stability.phases == ("verification",)

    def test_recovery_defaults(self):
        recovery = RouterConfig().recovery
        assert recovery.circuit_breaker_threshold == 5
        assert recovery.circuit_breaker_reset_ms == 60_000
        assert recovery.fail_fast_categories == ("invalid_request",)

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: WorkflowConfig(max_attempts=0),
            lambda: WorkflowConfig(timeout_ms=-1),
            lambda: WorkflowConfig(phase_timeouts_ms={"intent": 0}),
            lambda: StabilityConfig(poll_interval_ms=0),
        ],
    )
    def test_invalid_values(self, factory):
        with pytest.raises(ConfigError):
            factory()


class TestFromDict:
    def test_nested_and_camel_case(self):
        config = RouterConfig.from_dict({
            "workflow": {"maxAttempts": 4, "phaseTimeouts": {"intent": 1000}},
            "recovery": {"circuitBreakerThreshold": 2},
            "backend": {"proxyUrl": "http://proxy:9000"},
        })
        assert config.workflow.max_attempts == 4
        assert config.workflow.phase_timeout_ms("intent") == 1000
        assert config.workflow.phase_timeout_ms("verification") == 180_000
        assert config.recovery.circuit_breaker_threshold == 2
        assert config.backend.proxy_url == "http://proxy:9000"

    def test_flat_keys(self):
        config = RouterConfig.from_dict({
            "max_attempts": 2,
            "auto_retry": False,
            "pollIntervalMs": 100,
        })
        assert config.workflow.max_attempts == 2
        assert config.recovery.auto_retry is False
        assert config.workflow.stability.poll_interval_ms == 100

    def test_fail_fast_string(self):
        config = RouterConfig.from_dict({"recovery": {"fail_fast_categories": "auth"}})
        assert config.recovery.fail_fast_categories == ("auth",)

    def test_unknown_keys_are_ignored(self, caplog):
        config = RouterConfig.from_dict({"colour": "blue"})
        assert config.workflow.max_attempts == 3
        assert "colour" in caplog.text

    def test_bad_section(self):
        with pytest.raises(ConfigError):
            RouterConfig.from_dict({"workflow": "fast"})

    def test_bad_integer(self):
        with pytest.raises(ConfigError, match="max_attempts"):
            RouterConfig.from_dict({"max_attempts": "many"})

    def test_to_dict_round_trip(self, tmp_path):
        config = RouterConfig.from_dict({"hooks_file": str(tmp_path / "hooks.yaml")})
        data = config.to_dict()
        assert data["hooks_file"] == str(tmp_path / "hooks.yaml")
        assert "source_path" not in data
        assert RouterConfig.from_dict(data).workflow == config.workflow


class TestWithOverrides:
    def test_overrides_copy(self):
        base = WorkflowConfig()
        updated = base.with_overrides({"maxAttempts": 5, "minStabilityTimeMs": 0})
        assert updated.max_attempts == 5
        assert updated.stability.min_stability_time_ms == 0
        assert base.max_attempts == 3
        assert base.stability.min_stability_time_ms == 5000

    def test_phase_timeouts_merge(self):
        updated = WorkflowConfig().with_overrides({"phase_timeouts_ms": {"intent": 5}})
        assert updated.phase_timeout_ms("intent") == 5
        assert updated.phase_timeout_ms("completion") == 30_000

    def test_no_overrides_returns_self(self):
        base = WorkflowConfig()
        assert base.with_overrides(None) is base
        assert base.with_overrides({}) is base

    def test_invalid_override(self):
        with pytest.raises(ConfigError):
            WorkflowConfig().with_overrides({"timeout_ms": 0})


class TestLoadConfig:
    def test_config_dir_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LLM_ROUTER_HOME", str(tmp_path))
        assert get_config_dir() == tmp_path
        assert get_config_file() == tmp_path / "config.yaml"

    def test_xdg_config_home(self, monkeypatch, tmp_path):
        monkeypatch.delenv("LLM_ROUTER_HOME", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_config_dir() == tmp_path / "llm-router"

    def test_missing_default_uses_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("LLM_ROUTER_HOME", str(tmp_path))
        monkeypatch.delenv("LLM_ROUTER_PROXY_URL", raising=False)
        config = load_config()
        assert config.source_path is None
        assert config.workflow == WorkflowConfig()

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_load_file_and_env(self, monkeypatch, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("workflow:\n  max_attempts: 4\nbackend:\n  api_key: from-file\n")
        monkeypatch.setenv("LLM_ROUTER_API_KEY", "from-env")

        config = load_config(path)
        assert config.source_path == path
        assert config.workflow.max_attempts == 4
        assert config.backend.api_key == "from-env"

    def test_non_mapping_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("{{invalid")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)
