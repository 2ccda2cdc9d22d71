"""
Retry executor for backend calls.

Two independent retry budgets:
- Ordinary failures: exponential backoff with jitter,
  delay = 2**attempt * base_backoff + base_backoff * random()
- Rate-limit failures (HTTP 429 or "rate limit" in the message): fixed long
  cooldown, counted separately and reset on success.

Each attempt runs on a worker thread and is bounded by `attempt_timeout`.
An attempt that times out is abandoned, not cancelled: Python threads cannot
be interrupted, so the worker keeps running until the underlying call
returns. Providers must therefore set their own HTTP timeouts, otherwise a
hung connection leaks one worker thread per timed-out attempt.
"""

import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional, TypeVar

from ..errors import (
    AttemptTimeoutError,
    ConfigError,
    RateLimitError,
    RateLimitExhaustedError,
    RetriesExhaustedError,
)
from ..providers.base import error_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_BACKOFF = 2.5
DEFAULT_MAX_RATE_LIMIT_RETRIES = 10
DEFAULT_RATE_LIMIT_DELAY = 61.0
DEFAULT_ATTEMPT_TIMEOUT = 27.5


def is_rate_limit_error(error: BaseException) -> bool:
    """Whether `error` denotes a rate-limit response."""
    if isinstance(error, RateLimitError):
        return True
    if error_status(error) == 429:
        return True
    return "rate limit" in str(error).lower()


class BackoffExecutor:
    """
    Executes a single backend operation with bounded retries.

    Usage:
        executor = BackoffExecutor(max_retries=3)
        raw = executor.execute(lambda: provider.invoke(messages))
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES,
        rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY,
        attempt_timeout: Optional[float] = DEFAULT_ATTEMPT_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
        max_workers: int = 16,
    ):
        """
        Args:
            max_retries: Ordinary failures allowed before giving up (>= 1)
            base_backoff: Base delay in seconds for exponential backoff
            max_rate_limit_retries: Rate-limit retries before giving up
            rate_limit_delay: Cooldown in seconds after a rate-limit failure
            attempt_timeout: Seconds per attempt; None disables the timeout
            sleep: Sleep function (injectable for tests)
            rand: Jitter source returning a float in [0, 1)
            max_workers: Worker threads available for timed attempts
        """
        if max_retries < 1:
            raise ConfigError("max_retries must be at least 1")
        if max_rate_limit_retries < 0:
            raise ConfigError("max_rate_limit_retries must not be negative")

        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.max_rate_limit_retries = max_rate_limit_retries
        self.rate_limit_delay = rate_limit_delay
        self.attempt_timeout = attempt_timeout
        self._sleep = sleep
        self._rand = rand

        self._pool: Optional[ThreadPoolExecutor] = None
        self._max_workers = max_workers
        self._lock = threading.Lock()
        self._stats = {"calls": 0, "attempts": 0, "retries": 0, "rate_limited": 0, "timeouts": 0, "failures": 0}

    @classmethod
    def from_config(cls, retry: Dict[str, Any], **kwargs) -> "BackoffExecutor":
        return cls(
            max_retries=int(retry.get("max_retries", DEFAULT_MAX_RETRIES)),
            base_backoff=float(retry.get("base_backoff", DEFAULT_BASE_BACKOFF)),
            max_rate_limit_retries=int(retry.get("max_rate_limit_retries", DEFAULT_MAX_RATE_LIMIT_RETRIES)),
            rate_limit_delay=float(retry.get("rate_limit_delay", DEFAULT_RATE_LIMIT_DELAY)),
            attempt_timeout=retry.get("attempt_timeout", DEFAULT_ATTEMPT_TIMEOUT),
            **kwargs,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the next attempt after `attempt` ordinary failures."""
        return (2 ** attempt) * self.base_backoff + self.base_backoff * self._rand()

    def _run_attempt(self, call: Callable[[], T], on_attempt: Optional[Callable[[Future], None]] = None) -> T:
        if self.attempt_timeout is None:
            return call()

        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="clearmail-attempt"
                )
            pool = self._pool

        future = pool.submit(call)
        if on_attempt is not None:
            on_attempt(future)
        try:
            return future.result(timeout=self.attempt_timeout)
        except FutureTimeoutError:
            future.cancel()
            with self._lock:
                self._stats["timeouts"] += 1
            raise AttemptTimeoutError(
                f"Request took longer than {self.attempt_timeout} seconds"
            ) from None

    def execute(self, call: Callable[[], T], on_attempt: Optional[Callable[[Future], None]] = None) -> T:
        """
        Run `call` until it succeeds or a retry budget is exhausted.

        Args:
            call: Zero-argument callable performing one attempt
            on_attempt: Called with the Future of each timed attempt

        Returns:
            Whatever `call` returns on its first successful attempt

        Raises:
            RetriesExhaustedError: `max_retries` ordinary failures
            RateLimitExhaustedError: more than `max_rate_limit_retries`
                rate-limit failures since the last success
        """
        attempts = 0
        rate_limit_attempts = 0
        last_error: Optional[BaseException] = None

        with self._lock:
            self._stats["calls"] += 1

        while attempts < self.max_retries:
            with self._lock:
                self._stats["attempts"] += 1
            try:
                return self._run_attempt(call, on_attempt)
            except Exception as e:
                last_error = e

                if is_rate_limit_error(e):
                    rate_limit_attempts += 1
                    with self._lock:
                        self._stats["rate_limited"] += 1
                    if rate_limit_attempts > self.max_rate_limit_retries:
                        with self._lock:
                            self._stats["failures"] += 1
                        raise RateLimitExhaustedError(
                            f"Rate limit exceeded after {self.max_rate_limit_retries} retries",
                            last_error=e,
                            attempts=rate_limit_attempts,
                        ) from e
                    logger.info(
                        f"Hit rate limit. Sleeping for {self.rate_limit_delay:g}s... "
                        f"(Attempt {rate_limit_attempts}/{self.max_rate_limit_retries})"
                    )
                    self._sleep(self.rate_limit_delay)
                    continue

                attempts += 1
                if attempts >= self.max_retries:
                    break

                delay = self.backoff_delay(attempts)
                with self._lock:
                    self._stats["retries"] += 1
                logger.warning(
                    f"Attempt {attempts} failed with error: {e}. Retrying in {delay:.1f}s..."
                )
                self._sleep(delay)

        with self._lock:
            self._stats["failures"] += 1
        raise RetriesExhaustedError(
            f"Backend call failed after {attempts} attempts: {last_error}",
            last_error=last_error,
            attempts=attempts,
        ) from last_error

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._stats)

    def shutdown(self) -> None:
        """Release the attempt worker pool without waiting for abandoned attempts."""
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False)
