"""Tests for llm_router.cli module."""

import json
from unittest.mock import patch

import pytest

from conftest import FakeBackend
from llm_router.cli import main
from llm_router.errors import ExpertCallError


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config directory at an empty temp dir."""
    monkeypatch.setenv("LLM_ROUTER_HOME", str(tmp_path))
    monkeypatch.delenv("LLM_ROUTER_PROXY_URL", raising=False)
    monkeypatch.delenv("LLM_ROUTER_API_KEY", raising=False)
    return tmp_path


@pytest.fixture
def fake_backend(monkeypatch):
    """Replace the HTTP backend the session builds with a scripted one."""
    backend = FakeBackend()
    monkeypatch.setattr("llm_router.session.HttpExpertBackend", lambda config, clock=None: backend)
    return backend


class TestMain:
    """Tests for main CLI entry point."""

    def test_no_args_shows_help(self, capsys):
        """Running without arguments should show help and exit 0."""
        with patch("sys.argv", ["llm-router"]):
            result = main()
        assert result == 0
        captured = capsys.readouterr()
        assert "usage:" in captured.out.lower()

    def test_invalid_command_exits_with_error(self, capsys):
        """Running with invalid command should exit with error."""
        with patch("sys.argv", ["llm-router", "invalid-command"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
        assert exc_info.value.code == 2
        captured = capsys.readouterr()
        assert "invalid choice" in captured.err

    def test_missing_explicit_config(self, capsys, tmp_path):
        """An explicit --config that does not exist is an error."""
        with patch("sys.argv", ["llm-router", "-c", str(tmp_path / "nope.yaml"), "config", "show"]):
            result = main()
        assert result == 1
        assert "Config error" in capsys.readouterr().err


class TestIntentCommand:
    def test_intent(self, capsys):
        with patch("sys.argv", ["llm-router", "intent", "fix", "the", "crash", "on", "startup"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "Intent:     debugging" in output
        assert "Complexity: trivial" in output
        assert "strategist, reviewer" in output


class TestClassifyErrorCommand:
    def test_retryable_error(self, capsys):
        with patch("sys.argv", ["llm-router", "classify-error", "429", "Too", "Many", "Requests"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "Category:     rate_limit" in output
        assert "Retry:        yes" in output
        assert "Delay:        5000ms" in output
        assert "Fallback:     use_fallback_expert" in output

    def test_auth_error(self, capsys):
        with patch("sys.argv", ["llm-router", "classify-error", "401 Unauthorized"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "Category:     auth" in output
        assert "Retry:        no" in output

    def test_attempt_count(self, capsys):
        with patch("sys.argv", ["llm-router", "classify-error", "network error", "--attempt", "3"]):
            main()
        assert "Retry:        no" in capsys.readouterr().out


class TestExpertsCommand:
    """Tests for the experts command."""

    def test_experts_list(self, capsys):
        """experts list should show every expert with its chain."""
        with patch("sys.argv", ["llm-router", "experts", "list"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "strategist" in output
        assert "researcher -> reviewer" in output

    def test_experts_show(self, capsys):
        with patch("sys.argv", ["llm-router", "experts", "show", "strategist"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "Model: gpt-5" in output
        assert "Fallbacks: researcher, reviewer" in output

    def test_experts_show_missing(self, capsys):
        """experts show with nonexistent expert should error."""
        with patch("sys.argv", ["llm-router", "experts", "show", "nobody"]):
            result = main()
        assert result == 1
        assert "Unknown expert: nobody" in capsys.readouterr().err

    def test_experts_file_with_cycle(self, capsys, isolated_config):
        experts = isolated_config / "experts.yaml"
        experts.write_text("experts:\n  explorer:\n    fallbacks: [writer]\n")
        (isolated_config / "config.yaml").write_text(f"experts_file: {experts}\n")

        with patch("sys.argv", ["llm-router", "experts", "list"]):
            result = main()
        assert result == 1
        assert "cycle" in capsys.readouterr().err.lower()

    def test_experts_no_subcommand(self, capsys):
        with patch("sys.argv", ["llm-router", "experts"]):
            result = main()
        assert result == 1


class TestHooksCommand:
    def test_hooks_list_shows_builtins(self, capsys):
        with patch("sys.argv", ["llm-router", "hooks", "list"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "builtin_circuit_breaker_gate" in output
        assert "builtin_error_annotator" in output


class TestConfigCommand:
    def test_config_show_defaults(self, capsys):
        with patch("sys.argv", ["llm-router", "config", "show"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "(defaults)" in output
        assert "max_attempts: 3" in output

    def test_config_show_loaded(self, capsys, isolated_config):
        (isolated_config / "config.yaml").write_text("maxAttempts: 5\n")
        with patch("sys.argv", ["llm-router", "config", "show"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "(loaded)" in output
        assert "max_attempts: 5" in output

    def test_invalid_config_value(self, capsys, isolated_config):
        (isolated_config / "config.yaml").write_text("workflow:\n  max_attempts: 0\n")
        with patch("sys.argv", ["llm-router", "config", "show"]):
            result = main()
        assert result == 1
        assert "max_attempts" in capsys.readouterr().err


class TestRunCommand:
    """Tests for the run command."""

    def test_run_success(self, capsys, fake_backend):
        with patch("sys.argv", ["llm-router", "run", "implement a cache for the config loader", "--no-verify"]):
            result = main()
        assert result == 0
        output = capsys.readouterr().out
        assert "## Workflow Completed" in output
        assert "reviewer" not in fake_backend.called()

    def test_run_json(self, capsys, fake_backend):
        with patch("sys.argv", ["llm-router", "run", "implement", "a", "cache", "--no-verify", "--json"]):
            result = main()
        assert result == 0
        data = json.loads(capsys.readouterr().out)
        assert data["success"] is True
        assert data["intent"] == "implementation"
        assert data["phases_executed"][-1] == "completion"

    def test_run_failure_exit_code(self, capsys, fake_backend):
        fake_backend.script["explorer"] = ExpertCallError("HTTP 400 Bad Request from explorer")
        with patch("sys.argv", ["llm-router", "run", "implement a cache", "--no-verify", "--max-attempts", "2"]):
            result = main()
        assert result == 1
        assert "## Workflow Ended" in capsys.readouterr().out
