"""
Tests for retry.py - Backoff, Retry Classification and Circuit Breaker
"""
import asyncio
import errno

import httpx
import openai
import pytest

from app.services.errors import (
    CircuitOpenError,
    FatalProviderError,
    ProviderError,
    TransientProviderError,
)
from app.services.retry import (
    CircuitBreaker,
    RetryOptions,
    compute_backoff_ms,
    is_retryable_error,
    with_retry,
)

from tests.fixtures.research_fixtures import FakeClock, RecordingSleep


class StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _no_jitter() -> float:
    return 0.0


class FlakyOperation:
    """Raises the given errors in order, then returns ``result``."""

    def __init__(self, errors, result="ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class TestIsRetryableError:
    """Tests for transient vs fatal classification."""

    @pytest.mark.parametrize(
        "error",
        [
            TransientProviderError("rate limited", status_code=429),
            ProviderError("upstream", status_code=503),
            StatusError(429),
            StatusError(500),
            StatusError(504),
            ConnectionResetError("connection reset by peer"),
            TimeoutError("timed out"),
            OSError(errno.ETIMEDOUT, "timed out"),
            httpx.ConnectError("connection refused"),
            Exception("Model is overloaded, try later"),
            Exception("Rate limit exceeded for this key"),
            Exception("Bad gateway (502)"),
        ],
    )
    def test_transient_errors_are_retryable(self, error):
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            FatalProviderError("invalid api key", status_code=401),
            StatusError(400),
            StatusError(404),
            ValueError("Expecting value: line 1 column 1"),
            KeyError("company_basics"),
        ],
    )
    def test_fatal_errors_are_not_retryable(self, error):
        assert is_retryable_error(error) is False

    def test_openai_connection_error_is_retryable(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        assert is_retryable_error(openai.APIConnectionError(request=request)) is True

    def test_open_circuit_is_not_retryable_even_if_message_mentions_503(self):
        """The remaining-cooldown number must not be mistaken for a status code."""
        error = CircuitOpenError("llm", remaining_ms=503_000)
        assert "503" in str(error)
        assert is_retryable_error(error) is False


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class TestComputeBackoff:
    """Tests for exponential backoff with jitter and cap."""

    @pytest.mark.parametrize(
        "attempt,expected",
        [(0, 2000), (1, 4000), (2, 8000), (3, 16000), (4, 30000), (10, 30000)],
    )
    def test_doubles_and_caps_without_jitter(self, attempt, expected):
        options = RetryOptions(jitter=_no_jitter)
        assert compute_backoff_ms(attempt, options) == expected

    def test_jitter_scales_delay(self):
        options = RetryOptions()
        assert compute_backoff_ms(0, options, jitter=0.25) == pytest.approx(2500)

    def test_jitter_never_exceeds_cap(self):
        options = RetryOptions(base_delay_ms=20000, max_delay_ms=25000)
        assert compute_backoff_ms(0, options, jitter=0.29) == 25000

    def test_default_jitter_is_bounded(self):
        options = RetryOptions()
        for _ in range(200):
            delay = compute_backoff_ms(0, options)
            assert 2000 <= delay < 2000 * 1.3


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------

class TestWithRetry:
    """Tests for the retry loop."""

    def test_non_retryable_predicate_stops_after_one_attempt(self):
        """An always-failing operation rejected by the predicate runs exactly once."""
        sleep = RecordingSleep()
        operation = FlakyOperation([TransientProviderError("boom")] * 10)
        options = RetryOptions(is_retryable=lambda e: False)

        with pytest.raises(TransientProviderError):
            asyncio.run(with_retry(operation, options, sleep=sleep))

        assert operation.attempts == 1
        assert sleep.delays == []

    def test_exhausts_retries_and_reraises_last_error(self):
        sleep = RecordingSleep()
        errors = [TransientProviderError(f"attempt {i}") for i in range(1, 5)]
        operation = FlakyOperation(errors)
        options = RetryOptions(max_retries=3, jitter=_no_jitter)

        with pytest.raises(TransientProviderError, match="attempt 4"):
            asyncio.run(with_retry(operation, options, sleep=sleep))

        assert operation.attempts == 4
        assert sleep.delays == pytest.approx([2.0, 4.0, 8.0])

    def test_succeeds_after_transient_failures(self):
        sleep = RecordingSleep()
        operation = FlakyOperation(
            [TransientProviderError("503"), StatusError(429)],
            result={"ok": True},
        )
        options = RetryOptions(max_retries=3, base_delay_ms=100, jitter=_no_jitter)

        result = asyncio.run(with_retry(operation, options, sleep=sleep))

        assert result == {"ok": True}
        assert operation.attempts == 3
        assert sleep.delays == pytest.approx([0.1, 0.2])

    def test_fatal_error_is_not_retried(self):
        sleep = RecordingSleep()
        operation = FlakyOperation([FatalProviderError("invalid json")])

        with pytest.raises(FatalProviderError):
            asyncio.run(with_retry(operation, RetryOptions(), sleep=sleep))

        assert operation.attempts == 1

    def test_zero_retries_means_single_attempt(self):
        sleep = RecordingSleep()
        operation = FlakyOperation([TransientProviderError("busy")])

        with pytest.raises(TransientProviderError):
            asyncio.run(with_retry(operation, RetryOptions(max_retries=0), sleep=sleep))

        assert operation.attempts == 1


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class TestCircuitBreaker:
    """Tests for failure counting, opening and lazy cooldown reset."""

    def test_opens_after_threshold_consecutive_failures(self):
        breaker = CircuitBreaker("llm", failure_threshold=3, cooldown_ms=60_000, clock=FakeClock())

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.is_circuit_open() is False

        breaker.record_failure()
        assert breaker.is_circuit_open() is True
        assert breaker.state == "open"

    def test_closes_and_resets_after_cooldown(self):
        clock = FakeClock()
        breaker = CircuitBreaker("llm", failure_threshold=3, cooldown_ms=60_000, clock=clock)
        for _ in range(3):
            breaker.record_failure()

        clock.advance_ms(59_000)
        assert breaker.is_circuit_open() is True
        assert breaker.remaining_cooldown_ms() == pytest.approx(1_000)

        clock.advance_ms(1_000)
        assert breaker.is_circuit_open() is False
        assert breaker.failure_count == 0
        assert breaker.state == "closed"

    def test_cooldown_counts_from_last_failure(self):
        clock = FakeClock()
        breaker = CircuitBreaker("llm", failure_threshold=2, cooldown_ms=10_000, clock=clock)
        breaker.record_failure()
        breaker.record_failure()

        clock.advance_ms(8_000)
        breaker.record_failure()
        clock.advance_ms(8_000)

        assert breaker.is_circuit_open() is True

    def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("llm", failure_threshold=3, clock=FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.failure_count == 1
        assert breaker.is_circuit_open() is False

    def test_reset_closes_open_circuit(self):
        breaker = CircuitBreaker("llm", failure_threshold=1, clock=FakeClock())
        breaker.record_failure()
        assert breaker.is_circuit_open() is True

        breaker.reset()
        assert breaker.is_circuit_open() is False
        assert breaker.remaining_cooldown_ms() == 0.0
