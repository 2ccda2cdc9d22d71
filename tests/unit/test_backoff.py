"""
Unit tests for the retry/backoff executor.
"""

import threading

import pytest

from clearmail.core.backoff import BackoffExecutor, is_rate_limit_error
from clearmail.errors import (
    AttemptTimeoutError,
    BackendError,
    ConfigError,
    RateLimitError,
    RateLimitExhaustedError,
    RetriesExhaustedError,
)


class Scripted:
    """Callable failing with the given outcomes in order, then returning 'ok'."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        return "ok"


class HttpError(Exception):
    def __init__(self, status):
        super().__init__(f"HTTP {status}")
        self.status = status


def make_executor(sleeps, **kwargs):
    kwargs.setdefault("attempt_timeout", None)
    return BackoffExecutor(sleep=sleeps.append, rand=lambda: 0.5, **kwargs)


class TestBackoffExecutor:
    """Tests for BackoffExecutor."""

    def test_success_first_try(self, sleeps):
        executor = make_executor(sleeps)
        call = Scripted()
        assert executor.execute(call) == "ok"
        assert call.calls == 1
        assert sleeps == []

    def test_recovers_after_transient_failures(self, sleeps):
        executor = make_executor(sleeps, base_backoff=2.5)
        call = Scripted(BackendError("502"), BackendError("503"))
        assert executor.execute(call) == "ok"
        assert call.calls == 3
        # 2**1 * 2.5 + 2.5 * 0.5, then 2**2 * 2.5 + 2.5 * 0.5
        assert sleeps == [6.25, 11.25]

    def test_third_ordinary_failure_is_terminal(self, sleeps):
        executor = make_executor(sleeps, max_retries=3)
        call = Scripted(BackendError("a"), BackendError("b"), BackendError("c"), "late success")
        with pytest.raises(RetriesExhaustedError) as exc:
            executor.execute(call)
        assert call.calls == 3
        assert exc.value.attempts == 3
        assert str(exc.value.last_error) == "c"
        assert len(sleeps) == 2

    def test_rate_limit_does_not_use_ordinary_budget(self, sleeps):
        executor = make_executor(sleeps, max_retries=1, rate_limit_delay=61.0)
        call = Scripted(RateLimitError(), RateLimitError(), RateLimitError())
        assert executor.execute(call) == "ok"
        assert call.calls == 4
        assert sleeps == [61.0, 61.0, 61.0]

    def test_eleventh_rate_limit_is_terminal(self, sleeps):
        executor = make_executor(sleeps, max_rate_limit_retries=10)
        call = Scripted(*[RateLimitError() for _ in range(11)])
        with pytest.raises(RateLimitExhaustedError) as exc:
            executor.execute(call)
        assert call.calls == 11
        assert exc.value.status_code == 429
        assert sleeps == [61.0] * 10

    def test_ten_rate_limits_then_success(self, sleeps):
        executor = make_executor(sleeps, max_rate_limit_retries=10)
        call = Scripted(*[RateLimitError() for _ in range(10)])
        assert executor.execute(call) == "ok"

    def test_mixed_failures_keep_separate_counts(self, sleeps):
        executor = make_executor(sleeps, max_retries=2)
        call = Scripted(BackendError("x"), RateLimitError(), RateLimitError(), BackendError("y"))
        with pytest.raises(RetriesExhaustedError):
            executor.execute(call)
        assert call.calls == 4

    def test_attempt_timeout_counts_as_ordinary_failure(self, sleeps):
        release = threading.Event()
        executor = make_executor(sleeps, max_retries=2, attempt_timeout=0.05)

        def hang():
            release.wait(5)
            return "too late"

        try:
            with pytest.raises(RetriesExhaustedError) as exc:
                executor.execute(hang)
            assert isinstance(exc.value.last_error, AttemptTimeoutError)
            assert executor.get_stats()["timeouts"] == 2
        finally:
            release.set()
            executor.shutdown()

    def test_on_attempt_receives_future(self, sleeps):
        executor = make_executor(sleeps, attempt_timeout=5)
        seen = []
        try:
            assert executor.execute(lambda: "ok", on_attempt=seen.append) == "ok"
        finally:
            executor.shutdown()
        assert len(seen) == 1
        assert seen[0].result() == "ok"

    def test_invalid_max_retries(self):
        with pytest.raises(ConfigError):
            BackoffExecutor(max_retries=0)

    def test_from_config(self, sleeps):
        executor = BackoffExecutor.from_config(
            {"max_retries": 5, "base_backoff": 1, "rate_limit_delay": 3}, sleep=sleeps.append
        )
        assert executor.max_retries == 5
        assert executor.max_rate_limit_retries == 10
        assert executor.rate_limit_delay == 3.0
        assert executor.attempt_timeout == 27.5


class TestRateLimitDetection:
    def test_detects_rate_limit_error(self):
        assert is_rate_limit_error(RateLimitError())

    def test_detects_status_attribute(self):
        assert is_rate_limit_error(HttpError(429))
        assert not is_rate_limit_error(HttpError(500))

    def test_detects_message(self):
        assert is_rate_limit_error(RuntimeError("Rate limit reached for gpt-4o-mini"))
        assert not is_rate_limit_error(RuntimeError("connection reset"))
