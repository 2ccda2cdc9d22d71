"""
Per-backend admission control for outbound classification requests.

Each backend kind owns a pool of PendingRequest slots; pool membership is
the in-flight count. `acquire` suspends the calling thread on a condition
variable until the pool for that kind has room.
"""

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Set

from ..errors import ConfigError, GateTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 3


class RequestStatus(Enum):
    """Lifecycle of an in-flight request."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(eq=False)
class PendingRequest:
    """One reserved slot in a backend pool."""
    backend_kind: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    status: RequestStatus = RequestStatus.PENDING
    started_at: float = field(default_factory=time.time)
    finished_at: float = 0.0
    handle: Optional[Any] = None  # Future of the running attempt, if any

    @property
    def is_pending(self) -> bool:
        return self.status is RequestStatus.PENDING


def _validate_limit(kind: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"max_concurrent for '{kind}' must be a positive integer, got {value!r}")
    return value


class ConcurrencyGate:
    """
    Bounded counting gate, one pool per backend kind.

    Usage:
        gate = ConcurrencyGate({"openai": 3, "local": 3})

        with gate.slot("openai") as pending:
            raw = executor.execute(call)

    Release is idempotent per slot: a slot released twice (e.g. by an abort
    path and by its own finally block) frees its capacity exactly once.
    """

    def __init__(self, max_concurrent: Optional[Dict[str, int]] = None, default: int = DEFAULT_MAX_CONCURRENT):
        """
        Args:
            max_concurrent: Mapping of backend kind to its in-flight limit.
                A "default" key overrides `default` for unlisted kinds.
            default: Limit for kinds not listed in `max_concurrent`

        Raises:
            ConfigError: If any limit is not a positive integer
        """
        limits = dict(max_concurrent or {})
        self.default_limit = _validate_limit("default", limits.pop("default", default))
        self.limits = {kind: _validate_limit(kind, value) for kind, value in limits.items()}

        self._pools: Dict[str, Set[PendingRequest]] = {}
        self._peaks: Dict[str, int] = {}
        self._cond = threading.Condition(threading.Lock())

    def limit_for(self, backend_kind: str) -> int:
        return self.limits.get(backend_kind, self.default_limit)

    def acquire(self, backend_kind: str, timeout: Optional[float] = None) -> PendingRequest:
        """
        Reserve a slot for `backend_kind`, blocking until one is free.

        Args:
            backend_kind: Backend pool to draw from
            timeout: Maximum seconds to wait; None waits indefinitely

        Raises:
            GateTimeoutError: If no slot freed up within `timeout`
        """
        limit = self.limit_for(backend_kind)
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._cond:
            pool = self._pools.setdefault(backend_kind, set())
            while len(pool) >= limit:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise GateTimeoutError(
                        f"No {backend_kind} slot available within {timeout}s ({len(pool)}/{limit} in flight)"
                    )
                self._cond.wait(remaining)

            pending = PendingRequest(backend_kind=backend_kind)
            pool.add(pending)
            self._peaks[backend_kind] = max(self._peaks.get(backend_kind, 0), len(pool))
            in_flight = len(pool)

        logger.debug(f"Slot {pending.request_id} acquired for {backend_kind} ({in_flight}/{limit})")
        return pending

    def release(self, pending: PendingRequest, failed: bool = False) -> bool:
        """
        Free the slot held by `pending`.

        Returns:
            True if the slot was released by this call, False if it had
            already been released
        """
        with self._cond:
            pool = self._pools.get(pending.backend_kind, set())
            if pending not in pool:
                return False
            pool.discard(pending)
            pending.status = RequestStatus.FAILED if failed else RequestStatus.COMPLETED
            pending.finished_at = time.time()
            self._cond.notify_all()
        return True

    @contextmanager
    def slot(self, backend_kind: str, timeout: Optional[float] = None) -> Iterator[PendingRequest]:
        """Acquire a slot and release it on every exit path."""
        pending = self.acquire(backend_kind, timeout=timeout)
        failed = True
        try:
            yield pending
            failed = False
        finally:
            self.release(pending, failed=failed)

    def in_flight(self, backend_kind: str) -> int:
        with self._cond:
            return len(self._pools.get(backend_kind, ()))

    def peak(self, backend_kind: str) -> int:
        """Highest in-flight count observed for `backend_kind`."""
        with self._cond:
            return self._peaks.get(backend_kind, 0)

    def get_status(self) -> Dict[str, Dict[str, int]]:
        with self._cond:
            kinds = set(self._pools) | set(self.limits)
            return {
                kind: {
                    "in_flight": len(self._pools.get(kind, ())),
                    "limit": self.limit_for(kind),
                    "peak": self._peaks.get(kind, 0),
                }
                for kind in sorted(kinds)
            }
