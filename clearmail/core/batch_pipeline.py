"""
Batch pipeline for one processing session.

Items are handled in fixed-size batches. The items of a batch run
concurrently on a thread pool and are all joined before the next batch
starts. Admission against the per-session cap is atomic, so no more than
`max_total` items are ever handed to the handler.

State machine::

    IDLE -> FETCHING -> DRAINING -> COMPLETED
                 \\          \\
                  +----------+-> ABORTED   (SessionAbortedError)
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..errors import ConfigError, SessionAbortedError
from ..mailbox.base import MailItem
from ..providers.base import Verdict

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
DEFAULT_BATCH_DELAY = 2.0

Handler = Callable[[MailItem], Optional[Verdict]]


class SessionState(Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"


class SessionCounters:
    """Session statistics shared by the workers of a batch."""

    def __init__(self, total_found: int = 0):
        self._lock = threading.Lock()
        self.total_found = total_found
        self.admitted = 0
        self.processed = 0
        self.errors = 0
        self.skipped = 0

    def try_admit(self, max_total: Optional[int]) -> bool:
        """Reserve one slot under the session cap. None means uncapped."""
        with self._lock:
            if max_total is not None and self.admitted >= max_total:
                return False
            self.admitted += 1
            return True

    def cap_reached(self, max_total: Optional[int]) -> bool:
        with self._lock:
            return max_total is not None and self.admitted >= max_total

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in ("processed", "errors", "skipped"):
            raise ValueError(f"Unknown counter: {name}")
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return {
                "processed": self.processed,
                "errors": self.errors,
                "skipped": self.skipped,
                "admitted": self.admitted,
                "total_found": self.total_found,
            }


@dataclass
class SessionReport:
    """Outcome of `BatchPipeline.run`."""
    state: SessionState
    processed: int = 0
    errors: int = 0
    skipped: int = 0
    total_found: int = 0
    batches: int = 0
    duration: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
            "total_found": self.total_found,
            "batches": self.batches,
            "duration": round(self.duration, 3),
            "error": self.error,
        }


class BatchPipeline:
    """
    Runs a handler over session items in joined batches.

    Usage:
        pipeline = BatchPipeline(batch_size=25, max_total=100, batch_delay=2.0)
        report = pipeline.run(items, handler, on_session_end=store.write)
    """

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_total: Optional[int] = None,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            batch_size: Items per batch, also the worker count of a batch
            max_total: Cap on items admitted per session (None = no cap)
            batch_delay: Seconds to wait between batches
            sleep: Injectable sleep function
        """
        if batch_size < 1:
            raise ConfigError(f"batch_size must be >= 1, got {batch_size}")
        if max_total is not None and max_total < 0:
            raise ConfigError(f"max_total must be >= 0, got {max_total}")
        self.batch_size = batch_size
        self.max_total = max_total
        self.batch_delay = max(0.0, batch_delay)
        self._sleep = sleep
        self._state = SessionState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> SessionState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: SessionState) -> None:
        with self._state_lock:
            logger.debug(f"Session state {self._state.value} -> {state.value}")
            self._state = state

    def begin_fetch(self) -> None:
        """Enter FETCHING while the caller connects to and searches the mailbox."""
        self._set_state(SessionState.FETCHING)

    def abort_fetch(self) -> None:
        """The fetch failed before `run` started; the session is ABORTED."""
        if self.state is SessionState.FETCHING:
            self._set_state(SessionState.ABORTED)

    def run(
        self,
        items: Iterable[MailItem],
        handler: Handler,
        on_session_end: Optional[Callable[[], None]] = None,
    ) -> SessionReport:
        """
        Process `items` with `handler` in batches.

        Every item whose handler returns counts as processed; a None or
        unknown verdict is also counted in `skipped`, a sub-count of
        processed. An exception counts as an error. Errors never escape,
        except that a SessionAbortedError stops all later batches.

        Args:
            items: Items found for this session, in processing order
            handler: Callable run for each admitted item
            on_session_end: Always called once before returning

        Returns:
            SessionReport with the final counters
        """
        start = time.monotonic()
        if self.state is not SessionState.FETCHING:
            # `items` may be lazy; materializing it below is the fetch
            self._set_state(SessionState.FETCHING)
        abort_error: Optional[BaseException] = None
        batches = 0
        counters = SessionCounters()

        try:
            pending: List[MailItem] = list(items)
            counters.total_found = len(pending)
            logger.info(
                f"Found {len(pending)} messages; processing up to "
                f"{self.max_total if self.max_total is not None else 'all'} in batches of {self.batch_size}"
            )
            self._set_state(SessionState.DRAINING)

            for offset in range(0, len(pending), self.batch_size):
                if counters.cap_reached(self.max_total):
                    logger.debug("Reached maximum email processing limit")
                    break

                batch = pending[offset:offset + self.batch_size]
                abort_error = self._run_batch(batch, handler, counters)
                batches += 1
                if abort_error is not None:
                    break

                more_left = offset + self.batch_size < len(pending)
                if more_left and not counters.cap_reached(self.max_total):
                    logger.info(
                        f"Processed {counters.snapshot()['admitted']}/{len(pending)} so far. "
                        f"Waiting {self.batch_delay}s before next batch..."
                    )
                    self._sleep(self.batch_delay)
        except SessionAbortedError as e:
            abort_error = e
        finally:
            if on_session_end is not None:
                try:
                    on_session_end()
                except Exception as e:
                    logger.error(f"Session end callback failed: {e}")

        self._set_state(SessionState.ABORTED if abort_error else SessionState.COMPLETED)
        stats = counters.snapshot()
        report = SessionReport(
            state=self.state,
            processed=stats["processed"],
            errors=stats["errors"],
            skipped=stats["skipped"],
            total_found=stats["total_found"],
            batches=batches,
            duration=time.monotonic() - start,
            error=str(abort_error) if abort_error else None,
        )
        if abort_error:
            logger.error(f"Session aborted after {batches} batch(es): {abort_error}")
        else:
            logger.info(
                f"Email processing session completed: processed={report.processed} "
                f"errors={report.errors} skipped={report.skipped} "
                f"duration={report.duration:.1f}s totalFound={report.total_found}"
            )
        return report

    def _run_batch(
        self, batch: Sequence[MailItem], handler: Handler, counters: SessionCounters
    ) -> Optional[BaseException]:
        """Run one batch to completion. Returns the session abort error, if any."""
        admitted = [item for item in batch if counters.try_admit(self.max_total)]
        if not admitted:
            return None

        logger.info(f"Processing batch of {len(admitted)} emails...")
        abort_errors: List[BaseException] = []

        def work(item: MailItem) -> None:
            try:
                verdict = handler(item)
            except SessionAbortedError as e:
                counters.incr("errors")
                logger.error(f"Session fault while processing email #{item.uid}: {e}")
                abort_errors.append(e)
                return
            except Exception as e:
                counters.incr("errors")
                logger.error(f"Error processing email #{item.uid}: {e}")
                return

            counters.incr("processed")
            if verdict is None or not verdict.is_actionable:
                counters.incr("skipped")

        # Leaving the with-block joins every future of the batch
        with ThreadPoolExecutor(
            max_workers=min(self.batch_size, len(admitted)),
            thread_name_prefix="clearmail-batch",
        ) as pool:
            for item in admitted:
                pool.submit(work, item)

        return abort_errors[0] if abort_errors else None
