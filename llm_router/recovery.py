"""Error classification, retry policy and circuit breaking.

``classify_error`` buckets a raw error into an :class:`ErrorCategory` using
the ordered ``ERROR_PATTERNS`` table (first matching category wins).
``get_recovery_strategy`` turns a category and attempt count into a
:class:`RecoveryStrategy`. :class:`RecoveryEngine` keeps the per-session
:class:`SessionRecoveryState`, gates traffic through a
:class:`CircuitBreaker` and runs backend calls with retry/backoff.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .clock import Clock, SystemClock
from .config import RecoveryConfig
from .errors import CircuitOpenError, ConfigError

logger = logging.getLogger("llm-router.recovery")

T = TypeVar("T")

MESSAGE_TRUNCATE = 200


class ErrorCategory(str, Enum):
    """Error taxonomy for backend-call failures."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK = "network"
    AUTH = "auth"
    SERVER = "server"
    INVALID_REQUEST = "invalid_request"
    CONTEXT_OVERFLOW = "context_overflow"
    UNKNOWN = "unknown"


def _patterns(*sources: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(s, re.IGNORECASE) for s in sources)


# Order matters: the first category with a matching pattern wins.
ERROR_PATTERNS: tuple[tuple[ErrorCategory, tuple[re.Pattern[str], ...]], ...] = (
    (ErrorCategory.RATE_LIMIT, _patterns(
        r"rate.?limit",
        r"too.?many.?requests",
        r"quota.?exceeded",
        r"\b429\b",
        r"throttl",
    )),
    (ErrorCategory.TIMEOUT, _patterns(
        r"timeout",
        r"timed?.?out",
        r"deadline.?exceeded",
        r"ETIMEDOUT",
        r"ESOCKETTIMEDOUT",
    )),
    (ErrorCategory.NETWORK, _patterns(
        r"network",
        r"ECONNREFUSED",
        r"ECONNRESET",
        r"ENOTFOUND",
        r"fetch.?failed",
        r"connection.?(refused|reset|error)",
        r"socket.?hang.?up",
    )),
    (ErrorCategory.AUTH, _patterns(
        r"auth",
        r"unauthori[sz]ed",
        r"forbidden",
        r"\b401\b",
        r"\b403\b",
        r"invalid.?api.?key",
        r"token.?expired",
    )),
    (ErrorCategory.SERVER, _patterns(
        r"internal.?server",
        r"\b50[0234]\b",
        r"service.?unavailable",
        r"bad.?gateway",
    )),
    (ErrorCategory.INVALID_REQUEST, _patterns(
        r"invalid.?request",
        r"bad.?request",
        r"\b400\b",
        r"validation.?error",
        r"malformed",
    )),
    (ErrorCategory.CONTEXT_OVERFLOW, _patterns(
        r"context.?length",
        r"token.?limit",
        r"too.?long",
        r"maximum.?context",
        r"overflow",
    )),
)


def error_message(error: str | BaseException | None) -> str:
    """Text used for classification; exceptions without a message use their type name."""
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def classify_error(error: str | BaseException | None) -> ErrorCategory:
    """Map an error (message or exception) to exactly one category."""
    text = error_message(error)
    for category, patterns in ERROR_PATTERNS:
        if any(p.search(text) for p in patterns):
            return category
    return ErrorCategory.UNKNOWN


class FallbackAction(str, Enum):
    USE_FALLBACK_EXPERT = "use_fallback_expert"
    SIMPLIFY_REQUEST = "simplify_request"
    CHECK_CREDENTIALS = "check_credentials"
    TRUNCATE_CONTEXT = "truncate_context"


FALLBACK_ADVICE: dict[FallbackAction, str] = {
    FallbackAction.USE_FALLBACK_EXPERT: "Consider switching to another expert.",
    FallbackAction.SIMPLIFY_REQUEST: "Simplify the request or split it into smaller parts.",
    FallbackAction.CHECK_CREDENTIALS: "Check the API key and credentials.",
    FallbackAction.TRUNCATE_CONTEXT: "Trim the context or start a new session.",
}


@dataclass(frozen=True)
class RecoveryStrategy:
    should_retry: bool
    retry_delay_ms: int
    max_retries: int
    fallback_action: FallbackAction | None
    user_message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "should_retry": self.should_retry,
            "retry_delay_ms": self.retry_delay_ms,
            "max_retries": self.max_retries,
            "fallback_action": self.fallback_action.value if self.fallback_action else None,
            "user_message": self.user_message,
        }


@dataclass(frozen=True)
class _Policy:
    max_retries: int
    min_delay_ms: int
    fallback_action: FallbackAction | None
    user_message: str


POLICIES: dict[ErrorCategory, _Policy] = {
    ErrorCategory.RATE_LIMIT: _Policy(
        3, 5000, FallbackAction.USE_FALLBACK_EXPERT,
        "Rate limit reached. Retrying after a short wait.",
    ),
    ErrorCategory.TIMEOUT: _Policy(
        2, 0, FallbackAction.SIMPLIFY_REQUEST,
        "The request timed out. Retrying...",
    ),
    ErrorCategory.NETWORK: _Policy(
        3, 0, None,
        "A network error occurred. Check the connection; retrying.",
    ),
    ErrorCategory.AUTH: _Policy(
        0, 0, FallbackAction.CHECK_CREDENTIALS,
        "Authentication failed. Check your API key.",
    ),
    ErrorCategory.SERVER: _Policy(
        2, 3000, FallbackAction.USE_FALLBACK_EXPERT,
        "The server returned an error. Retrying...",
    ),
    ErrorCategory.INVALID_REQUEST: _Policy(
        0, 0, None,
        "The request is invalid. Check the request format.",
    ),
    ErrorCategory.CONTEXT_OVERFLOW: _Policy(
        0, 0, FallbackAction.TRUNCATE_CONTEXT,
        "The context limit was exceeded. Summarize the conversation or start a new session.",
    ),
    ErrorCategory.UNKNOWN: _Policy(
        1, 0, None,
        "An unknown error occurred.",
    ),
}


def get_recovery_strategy(
    category: ErrorCategory | str,
    attempt_count: int,
    config: RecoveryConfig | None = None,
) -> RecoveryStrategy:
    """Retry policy for ``category`` after ``attempt_count`` previous attempts."""
    config = config or RecoveryConfig()
    policy = POLICIES[ErrorCategory(category)]
    should_retry = attempt_count < policy.max_retries

    if policy.max_retries == 0:
        delay = 0
    else:
        delay = min(config.base_retry_delay_ms * 2 ** max(attempt_count, 0), config.max_retry_delay_ms)
        delay = max(delay, policy.min_delay_ms)

    return RecoveryStrategy(
        should_retry=should_retry,
        retry_delay_ms=delay,
        max_retries=policy.max_retries,
        fallback_action=policy.fallback_action,
        user_message=policy.user_message,
    )


# =============================================================================
# Session state & circuit breaker
# =============================================================================


@dataclass
class ErrorRecord:
    category: ErrorCategory
    message: str
    timestamp_ms: float
    recovered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category.value,
            "message": self.message,
            "timestamp_ms": self.timestamp_ms,
            "recovered": self.recovered,
        }


@dataclass
class SessionRecoveryState:
    """Mutable recovery bookkeeping for one session."""

    history_size: int = 50
    consecutive_errors: int = 0
    circuit_breaker_active: bool = False
    circuit_breaker_activated_at: float | None = None
    error_history: deque[ErrorRecord] = field(init=False)
    recovery_attempts: int = 0
    successful_recoveries: int = 0
    last_error_at: float | None = None
    last_success_at: float | None = None

    def __post_init__(self) -> None:
        self.error_history = deque(maxlen=self.history_size)

    @property
    def recovery_rate(self) -> float:
        if self.recovery_attempts == 0:
            return 1.0
        return self.successful_recoveries / self.recovery_attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "consecutive_errors": self.consecutive_errors,
            "circuit_breaker_active": self.circuit_breaker_active,
            "circuit_breaker_activated_at": self.circuit_breaker_activated_at,
            "error_history": [e.to_dict() for e in self.error_history],
            "recovery_attempts": self.recovery_attempts,
            "successful_recoveries": self.successful_recoveries,
            "recovery_rate": self.recovery_rate,
            "last_error_at": self.last_error_at,
            "last_success_at": self.last_success_at,
        }


class CircuitBreaker:
    """Trips after ``threshold`` consecutive errors and blocks until ``reset_ms`` elapses."""

    def __init__(
        self,
        state: SessionRecoveryState,
        threshold: int,
        reset_ms: int,
        clock: Clock,
    ) -> None:
        self.state = state
        self.threshold = threshold
        self.reset_ms = reset_ms
        self.clock = clock

    def is_open(self) -> bool:
        """Return whether traffic is blocked, resetting first if the cooldown is over."""
        s = self.state
        if s.circuit_breaker_active and s.circuit_breaker_activated_at is not None:
            if self.clock.now_ms() - s.circuit_breaker_activated_at >= self.reset_ms:
                s.circuit_breaker_active = False
                s.circuit_breaker_activated_at = None
                s.consecutive_errors = 0
                logger.info("Circuit breaker reset")
        return s.circuit_breaker_active

    def remaining_ms(self) -> float:
        s = self.state
        if not self.is_open() or s.circuit_breaker_activated_at is None:
            return 0.0
        return max(self.reset_ms - (self.clock.now_ms() - s.circuit_breaker_activated_at), 0.0)

    def after_error(self) -> bool:
        """Trip if the streak reached the threshold. Returns True if it tripped now."""
        s = self.state
        if s.circuit_breaker_active or s.consecutive_errors < self.threshold:
            return False
        s.circuit_breaker_active = True
        s.circuit_breaker_activated_at = self.clock.now_ms()
        logger.warning(
            "Circuit breaker activated after %d consecutive errors (threshold %d)",
            s.consecutive_errors, self.threshold,
        )
        return True


@dataclass(frozen=True)
class RecoveryDecision:
    """Outcome of :meth:`RecoveryEngine.on_error`."""

    category: ErrorCategory
    strategy: RecoveryStrategy
    circuit_open: bool
    retry_after_ms: float
    consecutive_errors: int

    @property
    def retrying(self) -> bool:
        return self.strategy.should_retry and not self.circuit_open


class RecoveryEngine:
    """Session-owned error accounting, breaker gate and retry loop."""

    def __init__(self, config: RecoveryConfig | None = None, clock: Clock | None = None) -> None:
        self.config = config or RecoveryConfig()
        self.clock = clock or SystemClock()
        self.state = SessionRecoveryState(history_size=self.config.error_history_size)
        self.breaker = CircuitBreaker(
            self.state,
            self.config.circuit_breaker_threshold,
            self.config.circuit_breaker_reset_ms,
            self.clock,
        )
        try:
            self.fail_fast = frozenset(ErrorCategory(c) for c in self.config.fail_fast_categories)
        except ValueError as e:
            raise ConfigError(f"Unknown fail-fast category: {e}") from e
        self._pending_recovery = False

    def strategy(self, category: ErrorCategory, attempt_count: int) -> RecoveryStrategy:
        return get_recovery_strategy(category, attempt_count, self.config)

    def is_fail_fast(self, category: ErrorCategory) -> bool:
        return category in self.fail_fast

    def cooldown_message(self) -> str:
        seconds = self.breaker.remaining_ms() / 1000.0
        return (
            "Requests are temporarily blocked after repeated errors. "
            f"Try again in {seconds:.0f}s."
        )

    def ensure_closed(self) -> None:
        """Raise :class:`CircuitOpenError` while the breaker is open."""
        if self.breaker.is_open():
            raise CircuitOpenError(self.cooldown_message(), retry_after_ms=self.breaker.remaining_ms())

    def record_error(
        self,
        error: str | BaseException,
        *,
        category: ErrorCategory | None = None,
        retrying: bool = False,
    ) -> ErrorRecord:
        """Count a failure. ``retrying`` marks it as the start of a recovery attempt."""
        category = category or classify_error(error)
        now = self.clock.now_ms()
        s = self.state
        s.consecutive_errors += 1
        s.last_error_at = now
        record = ErrorRecord(category, error_message(error)[:MESSAGE_TRUNCATE], now)
        s.error_history.append(record)
        if retrying:
            s.recovery_attempts += 1
            self._pending_recovery = True
        self.breaker.after_error()
        return record

    def record_success(self) -> None:
        s = self.state
        if self._pending_recovery:
            s.successful_recoveries += 1
            if s.error_history:
                s.error_history[-1].recovered = True
            self._pending_recovery = False
        s.consecutive_errors = 0
        s.last_success_at = self.clock.now_ms()

    def on_error(
        self,
        error: str | BaseException,
        *,
        attempt_count: int | None = None,
        record: bool = True,
    ) -> RecoveryDecision:
        """Classify ``error``, pick a strategy and (by default) record it."""
        category = classify_error(error)
        if attempt_count is None:
            attempt_count = self.state.consecutive_errors
        strategy = self.strategy(category, attempt_count)
        open_before = self.breaker.is_open()
        retrying = strategy.should_retry and self.config.auto_retry and not open_before
        if record:
            self.record_error(error, category=category, retrying=retrying)
        circuit_open = self.breaker.is_open()
        logger.info(
            "Error classified as %s (retry=%s, circuit_open=%s)",
            category.value, strategy.should_retry, circuit_open,
        )
        return RecoveryDecision(
            category=category,
            strategy=strategy,
            circuit_open=circuit_open,
            retry_after_ms=self.breaker.remaining_ms(),
            consecutive_errors=self.state.consecutive_errors,
        )

    async def execute(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        label: str = "call",
        prefer_fallback: bool = False,
    ) -> T:
        """Run ``fn`` with retry and backoff per the error's strategy.

        With ``prefer_fallback`` set, categories whose fallback action is to
        switch experts are raised immediately instead of retried.
        """
        attempt = 0
        while True:
            self.ensure_closed()
            try:
                result = await fn()
            except Exception as exc:
                category = classify_error(exc)
                strategy = self.strategy(category, attempt)
                retry = self.config.auto_retry and strategy.should_retry
                if prefer_fallback and strategy.fallback_action is FallbackAction.USE_FALLBACK_EXPERT:
                    retry = False
                self.record_error(exc, category=category, retrying=retry)
                if not retry or self.breaker.is_open():
                    raise
                logger.info(
                    "%s failed (%s), retry %d/%d in %dms",
                    label, category.value, attempt + 1, strategy.max_retries, strategy.retry_delay_ms,
                )
                await self.clock.sleep_ms(strategy.retry_delay_ms)
                attempt += 1
                continue
            self.record_success()
            return result

    def stats(self) -> dict[str, Any]:
        self.breaker.is_open()
        return self.state.to_dict()

    def reset(self) -> None:
        self.state = SessionRecoveryState(history_size=self.config.error_history_size)
        self.breaker.state = self.state
        self._pending_recovery = False
