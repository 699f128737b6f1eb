"""Tests for error classification, retry policy and the circuit breaker."""

from __future__ import annotations

import asyncio

import pytest

from llm_router.clock import VirtualClock
from llm_router.config import RecoveryConfig
from llm_router.errors import CircuitOpenError, ConfigError
from llm_router.recovery import (
    ErrorCategory,
    FallbackAction,
    RecoveryEngine,
    classify_error,
    error_message,
    get_recovery_strategy,
)


def _run(coro):
    return asyncio.run(coro)


# =============================================================================
# Classification
# =============================================================================


class TestClassifyError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("429 Too Many Requests", ErrorCategory.RATE_LIMIT),
            ("Rate limit exceeded for model", ErrorCategory.RATE_LIMIT),
            ("quota exceeded", ErrorCategory.RATE_LIMIT),
            ("Request timed out", ErrorCategory.TIMEOUT),
            ("ETIMEDOUT", ErrorCategory.TIMEOUT),
            ("connect ECONNREFUSED 127.0.0.1:4444", ErrorCategory.NETWORK),
            ("socket hang up", ErrorCategory.NETWORK),
            ("401 Unauthorized", ErrorCategory.AUTH),
            ("Invalid API key provided", ErrorCategory.AUTH),
            ("HTTP 502 Bad Gateway", ErrorCategory.SERVER),
            ("Internal server error", ErrorCategory.SERVER),
            ("400 Bad Request", ErrorCategory.INVALID_REQUEST),
            ("validation error: missing field", ErrorCategory.INVALID_REQUEST),
            ("maximum context length is 8192 tokens", ErrorCategory.CONTEXT_OVERFLOW),
            ("something odd happened", ErrorCategory.UNKNOWN),
            ("", ErrorCategory.UNKNOWN),
        ],
    )
    def test_categories(self, message, expected):
        assert classify_error(message) is expected

    def test_case_insensitive(self):
        assert classify_error("RATE LIMIT") is ErrorCategory.RATE_LIMIT

    def test_first_category_wins(self):
        # Matches both rate-limit and timeout patterns
        assert classify_error("rate limit: request timed out") is ErrorCategory.RATE_LIMIT

    def test_exception_uses_message(self):
        assert classify_error(RuntimeError("503 service unavailable")) is ErrorCategory.SERVER

    def test_exception_without_message_uses_type_name(self):
        assert error_message(TimeoutError()) == "TimeoutError"
        assert classify_error(TimeoutError()) is ErrorCategory.TIMEOUT

    def test_none(self):
        assert classify_error(None) is ErrorCategory.UNKNOWN


# =============================================================================
# Recovery strategy
# =============================================================================


class TestRecoveryStrategy:
    def test_auth_never_retried(self):
        for attempt in range(4):
            strategy = get_recovery_strategy(ErrorCategory.AUTH, attempt)
            assert strategy.should_retry is False
            assert strategy.retry_delay_ms == 0
        assert strategy.fallback_action is FallbackAction.CHECK_CREDENTIALS

    def test_invalid_request_and_context_overflow_not_retried(self):
        assert get_recovery_strategy(ErrorCategory.INVALID_REQUEST, 0).should_retry is False
        overflow = get_recovery_strategy(ErrorCategory.CONTEXT_OVERFLOW, 0)
        assert overflow.should_retry is False
        assert overflow.fallback_action is FallbackAction.TRUNCATE_CONTEXT

    def test_retry_budget(self):
        assert get_recovery_strategy(ErrorCategory.RATE_LIMIT, 2).should_retry is True
        assert get_recovery_strategy(ErrorCategory.RATE_LIMIT, 3).should_retry is False
        assert get_recovery_strategy(ErrorCategory.UNKNOWN, 0).should_retry is True
        assert get_recovery_strategy(ErrorCategory.UNKNOWN, 1).should_retry is False

    def test_exponential_backoff(self):
        delays = [get_recovery_strategy(ErrorCategory.NETWORK, n).retry_delay_ms for n in range(3)]
        assert delays == [1000, 2000, 4000]

    def test_backoff_is_capped(self):
        assert get_recovery_strategy(ErrorCategory.NETWORK, 10).retry_delay_ms == 30_000

    def test_category_floors(self):
        assert get_recovery_strategy(ErrorCategory.RATE_LIMIT, 0).retry_delay_ms == 5000
        assert get_recovery_strategy(ErrorCategory.RATE_LIMIT, 3).retry_delay_ms == 8000
        assert get_recovery_strategy(ErrorCategory.SERVER, 0).retry_delay_ms == 3000
        assert get_recovery_strategy(ErrorCategory.SERVER, 2).retry_delay_ms == 4000

    def test_custom_delays(self):
        config = RecoveryConfig(base_retry_delay_ms=100, max_retry_delay_ms=250)
        delays = [get_recovery_strategy("timeout", n, config).retry_delay_ms for n in range(3)]
        assert delays == [100, 200, 250]

    def test_to_dict(self):
        data = get_recovery_strategy(ErrorCategory.TIMEOUT, 0).to_dict()
        assert data["fallback_action"] == "simplify_request"
        assert data["max_retries"] == 2


# =============================================================================
# Circuit breaker
# =============================================================================


class TestCircuitBreaker:
    @pytest.fixture
    def clock(self):
        return VirtualClock()

    @pytest.fixture
    def engine(self, clock):
        return RecoveryEngine(RecoveryConfig(circuit_breaker_threshold=3), clock)

    def test_trips_at_threshold(self, engine):
        engine.record_error("boom")
        engine.record_error("boom")
        assert not engine.breaker.is_open()
        engine.record_error("boom")
        assert engine.breaker.is_open()
        assert engine.state.circuit_breaker_active

    def test_blocks_then_resets_after_cooldown(self, engine, clock):
        for _ in range(3):
            engine.record_error("boom")
        with pytest.raises(CircuitOpenError) as info:
            engine.ensure_closed()
        assert info.value.retry_after_ms == 60_000

        clock.advance(59_999)
        assert engine.breaker.is_open()
        clock.advance(1)
        assert not engine.breaker.is_open()
        assert engine.state.consecutive_errors == 0
        engine.ensure_closed()

    def test_success_resets_streak(self, engine):
        engine.record_error("boom")
        engine.record_error("boom")
        engine.record_success()
        engine.record_error("boom")
        assert engine.state.consecutive_errors == 1
        assert not engine.breaker.is_open()

    def test_error_history_is_bounded(self, clock):
        engine = RecoveryEngine(
            RecoveryConfig(error_history_size=3, circuit_breaker_threshold=100), clock,
        )
        for i in range(5):
            engine.record_error(f"error {i}")
        history = [r.message for r in engine.state.error_history]
        assert history == ["error 2", "error 3", "error 4"]

    def test_messages_are_truncated(self, engine):
        record = engine.record_error("x" * 500)
        assert len(record.message) == 200

    def test_recovery_rate(self, engine):
        assert engine.state.recovery_rate == 1.0
        engine.on_error("network error")
        engine.record_success()
        engine.on_error("network error")
        stats = engine.stats()
        assert stats["recovery_attempts"] == 2
        assert stats["successful_recoveries"] == 1
        assert stats["recovery_rate"] == 0.5
        assert stats["error_history"][0]["recovered"] is True

    def test_on_error_without_recording(self, engine):
        decision = engine.on_error("429", record=False)
        assert decision.category is ErrorCategory.RATE_LIMIT
        assert decision.retrying
        assert engine.state.consecutive_errors == 0

    def test_unknown_fail_fast_category(self):
        with pytest.raises(ConfigError):
            RecoveryEngine(RecoveryConfig(fail_fast_categories=("nonsense",)))

    def test_reset(self, engine):
        for _ in range(3):
            engine.record_error("boom")
        engine.reset()
        assert not engine.breaker.is_open()
        assert len(engine.state.error_history) == 0


# =============================================================================
# Retry loop
# =============================================================================


class _Flaky:
    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestExecute:
    @pytest.fixture
    def clock(self):
        return VirtualClock()

    @pytest.fixture
    def engine(self, clock):
        return RecoveryEngine(RecoveryConfig(circuit_breaker_threshold=10), clock)

    def test_retries_with_backoff(self, engine, clock):
        fn = _Flaky(RuntimeError("network error"), RuntimeError("network error"))
        assert _run(engine.execute(fn)) == "ok"
        assert fn.calls == 3
        assert clock.sleeps == [1000, 2000]
        assert engine.state.consecutive_errors == 0

    def test_non_retryable_raises_immediately(self, engine, clock):
        error = RuntimeError("401 Unauthorized")
        fn = _Flaky(error)
        with pytest.raises(RuntimeError) as info:
            _run(engine.execute(fn))
        assert info.value is error
        assert fn.calls == 1
        assert clock.sleeps == []

    def test_gives_up_after_budget(self, engine, clock):
        fn = _Flaky(*[RuntimeError("timed out") for _ in range(5)])
        with pytest.raises(RuntimeError):
            _run(engine.execute(fn))
        # One initial call plus two retries
        assert fn.calls == 3
        assert engine.state.consecutive_errors == 3

    def test_prefer_fallback_skips_retry(self, engine, clock):
        fn = _Flaky(RuntimeError("429 Too Many Requests"))
        with pytest.raises(RuntimeError):
            _run(engine.execute(fn, prefer_fallback=True))
        assert fn.calls == 1
        assert clock.sleeps == []

    def test_auto_retry_disabled(self, clock):
        engine = RecoveryEngine(RecoveryConfig(auto_retry=False), clock)
        fn = _Flaky(RuntimeError("network error"))
        with pytest.raises(RuntimeError):
            _run(engine.execute(fn))
        assert fn.calls == 1

    def test_open_breaker_refuses_call(self, clock):
        engine = RecoveryEngine(RecoveryConfig(circuit_breaker_threshold=1), clock)
        engine.record_error("boom")
        fn = _Flaky()
        with pytest.raises(CircuitOpenError):
            _run(engine.execute(fn))
        assert fn.calls == 0

    def test_breaker_trip_stops_retries(self, clock):
        engine = RecoveryEngine(RecoveryConfig(circuit_breaker_threshold=2), clock)
        fn = _Flaky(*[RuntimeError("network error") for _ in range(5)])
        with pytest.raises(RuntimeError):
            _run(engine.execute(fn))
        assert fn.calls == 2
        assert engine.breaker.is_open()
