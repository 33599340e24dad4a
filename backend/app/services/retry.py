"""
Retry with exponential backoff and a per-resource circuit breaker.

``with_retry`` wraps any awaitable-returning callable; ``CircuitBreaker`` only
reports whether a named resource should be skipped, callers decide what to do.
"""
from __future__ import annotations

import asyncio
import errno
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import openai
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import CircuitOpenError, FatalProviderError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_JITTER_RATIO = 0.3

_TRANSIENT_ERRNOS = {errno.ECONNRESET, errno.ETIMEDOUT}
_TRANSIENT_CODES = {"ECONNRESET", "ETIMEDOUT"}
_TRANSIENT_MESSAGE_MARKERS = ("502", "503", "overloaded", "rate limit")


def _status_code_of(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """
    Classify an error raised by the LLM provider as transient (retry) or fatal.

    Transient: 429 and 5xx responses, connection/timeouts, and provider
    "overloaded" / "rate limit" signals. Everything else is fatal.
    """
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, (FatalProviderError, CircuitOpenError)):
        return False

    status = _status_code_of(error)
    if status is not None:
        return status == 429 or 500 <= status < 600

    if isinstance(error, (openai.APIConnectionError, httpx.TransportError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if getattr(error, "errno", None) in _TRANSIENT_ERRNOS:
        return True
    if getattr(error, "code", None) in _TRANSIENT_CODES:
        return True

    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def _default_jitter() -> float:
    return random.random() * MAX_JITTER_RATIO


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 30000
    is_retryable: Callable[[BaseException], bool] = is_retryable_error
    # Returns a jitter ratio in [0, 0.3)
    jitter: Callable[[], float] = field(default=_default_jitter, repr=False)


def compute_backoff_ms(attempt: int, options: RetryOptions, jitter: float | None = None) -> float:
    """Delay before retrying after the 0-indexed ``attempt`` failed."""
    ratio = options.jitter() if jitter is None else jitter
    delay = options.base_delay_ms * (2 ** attempt) * (1 + ratio)
    return min(delay, options.max_delay_ms)


def _backoff_wait(options: RetryOptions) -> Callable[[RetryCallState], float]:
    def wait(retry_state: RetryCallState) -> float:
        # attempt_number is 1-indexed and refers to the attempt that just failed
        return compute_backoff_ms(retry_state.attempt_number - 1, options) / 1000.0

    return wait


def _log_retry(options: RetryOptions) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Attempt %s/%s failed, retrying in %sms: %s",
            retry_state.attempt_number,
            options.max_retries,
            round(delay * 1000),
            error,
            extra={"attempt": retry_state.attempt_number},
        )

    return before_sleep


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Await ``operation()`` up to ``max_retries + 1`` times.

    Non-retryable errors and the last error after exhausting retries are
    re-raised unchanged.
    """
    opts = options or RetryOptions()
    retrying = AsyncRetrying(
        stop=stop_after_attempt(opts.max_retries + 1),
        wait=_backoff_wait(opts),
        retry=retry_if_exception(opts.is_retryable),
        before_sleep=_log_retry(opts),
        reraise=True,
        sleep=sleep,
    )
    return await retrying(operation)


class CircuitBreaker:
    """
    Tracks consecutive failures for a named resource.

    The circuit opens after ``failure_threshold`` consecutive failures and
    closes again lazily, on the next ``is_circuit_open()`` query, once
    ``cooldown_ms`` has passed since the last failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_ms: int = 5 * 60 * 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._failure_count = 0
        self._last_failure_at = 0.0
        self._open = False

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def state(self) -> str:
        return "open" if self.is_circuit_open() else "closed"

    def _elapsed_ms(self) -> float:
        return (self._clock() - self._last_failure_at) * 1000.0

    def is_circuit_open(self) -> bool:
        if not self._open:
            return False

        if self._elapsed_ms() >= self.cooldown_ms:
            logger.info("Circuit %s cooldown elapsed, closing", self.name)
            self.reset()
            return False

        return True

    def record_success(self) -> None:
        self._failure_count = 0
        if self._open:
            logger.info("Circuit %s closed after successful call", self.name)
            self._open = False

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if self._failure_count >= self.failure_threshold and not self._open:
            logger.warning(
                "Circuit %s opened after %s consecutive failures, cooldown %ss",
                self.name,
                self._failure_count,
                round(self.cooldown_ms / 1000),
            )
            self._open = True

    def reset(self) -> None:
        self._failure_count = 0
        self._open = False

    def remaining_cooldown_ms(self) -> float:
        if not self._open:
            return 0.0
        return max(0.0, self.cooldown_ms - self._elapsed_ms())
