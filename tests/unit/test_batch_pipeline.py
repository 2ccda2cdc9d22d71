"""
Unit tests for the batch pipeline and its session counters.
"""

import random
import threading
import time

import pytest

from clearmail.core.batch_pipeline import BatchPipeline, SessionCounters, SessionState
from clearmail.errors import ConfigError, MailboxConnectionError
from clearmail.mailbox.base import MailItem
from clearmail.providers.base import Judgment, Verdict

KEEP = Verdict(Judgment.KEEP, explanation="personal")
UNKNOWN = Verdict.unknown("unparseable")


def items(n):
    return [MailItem(uid=str(i)) for i in range(1, n + 1)]


class TestSessionCounters:
    def test_try_admit_respects_cap(self):
        counters = SessionCounters()
        assert [counters.try_admit(2) for _ in range(4)] == [True, True, False, False]
        assert counters.admitted == 2

    def test_uncapped(self):
        counters = SessionCounters()
        assert all(counters.try_admit(None) for _ in range(50))

    def test_unknown_counter_rejected(self):
        with pytest.raises(ValueError):
            SessionCounters().incr("bogus")

    @pytest.mark.timeout(30)
    def test_concurrent_admission_never_exceeds_cap(self):
        counters = SessionCounters()
        admitted = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                if counters.try_admit(137):
                    with lock:
                        admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(admitted) == 137


class TestBatchPipeline:
    """Tests for BatchPipeline."""

    def test_invalid_batch_size(self):
        with pytest.raises(ConfigError):
            BatchPipeline(batch_size=0)

    def test_processes_all_items_in_batches(self, sleeps):
        pipeline = BatchPipeline(batch_size=4, batch_delay=2.0, sleep=sleeps.append)
        seen = []
        lock = threading.Lock()

        def handler(item):
            with lock:
                seen.append(item.uid)
            return KEEP

        report = pipeline.run(items(10), handler)
        assert report.state is SessionState.COMPLETED
        assert pipeline.state is SessionState.COMPLETED
        assert sorted(seen, key=int) == [str(i) for i in range(1, 11)]
        assert (report.processed, report.errors, report.skipped) == (10, 0, 0)
        assert report.total_found == 10
        assert report.batches == 3
        # Delay between batches only, never after the last one
        assert sleeps == [2.0, 2.0]

    def test_cap_limits_admission(self, sleeps):
        pipeline = BatchPipeline(batch_size=4, max_total=6, batch_delay=1.0, sleep=sleeps.append)
        handled = []
        report = pipeline.run(items(20), lambda item: handled.append(item.uid) or KEEP)
        assert len(handled) == 6
        assert sorted(handled, key=int) == ["1", "2", "3", "4", "5", "6"]
        assert report.processed == 6
        assert report.batches == 2
        # No delay once the cap is reached
        assert sleeps == [1.0]

    def test_zero_cap_processes_nothing(self, sleeps):
        handled = []
        report = BatchPipeline(batch_size=4, max_total=0, sleep=sleeps.append).run(items(5), handled.append)
        assert handled == []
        assert report.batches == 0
        assert report.state is SessionState.COMPLETED

    def test_outcomes_are_counted(self, sleeps):
        def handler(item):
            n = int(item.uid)
            if n % 3 == 0:
                raise RuntimeError(f"item {n} failed")
            if n % 3 == 1:
                return KEEP
            return UNKNOWN if n % 2 else None

        report = BatchPipeline(batch_size=5, sleep=sleeps.append).run(items(12), handler)
        assert report.errors == 4
        assert report.processed == 12 - 4
        assert report.skipped == 4
        assert report.state is SessionState.COMPLETED

    @pytest.mark.timeout(60)
    def test_counters_exact_under_random_completion(self, sleeps):
        rng = random.Random(7)
        plan = {str(i): rng.choice(["ok", "skip", "error"]) for i in range(1, 201)}
        delays = {uid: rng.random() * 0.003 for uid in plan}

        def handler(item):
            time.sleep(delays[item.uid])
            outcome = plan[item.uid]
            if outcome == "error":
                raise ValueError("scripted failure")
            return KEEP if outcome == "ok" else None

        report = BatchPipeline(batch_size=25, max_total=150, sleep=sleeps.append).run(items(200), handler)
        admitted = [plan[str(i)] for i in range(1, 151)]
        assert report.errors == admitted.count("error")
        assert report.processed == 150 - report.errors
        assert report.skipped == admitted.count("skip")

    @pytest.mark.timeout(60)
    def test_processed_is_n_minus_errors_with_skips(self, sleeps):
        def handler(item):
            n = int(item.uid)
            if n in (3, 7):
                raise RuntimeError("backend down")
            if n in (4, 9):
                return UNKNOWN
            return None

        report = BatchPipeline(batch_size=4, sleep=sleeps.append).run(items(10), handler)
        assert (report.processed, report.errors, report.skipped) == (8, 2, 8)

    def test_batches_are_joined_before_next(self, sleeps):
        running = []
        overlap = []
        lock = threading.Lock()

        def handler(item):
            batch = (int(item.uid) - 1) // 3
            with lock:
                running.append(batch)
                if any(b != batch for b in running):
                    overlap.append(item.uid)
            time.sleep(0.002)
            with lock:
                running.remove(batch)
            return KEEP

        BatchPipeline(batch_size=3, sleep=sleeps.append).run(items(9), handler)
        assert overlap == []

    def test_session_abort_stops_later_batches(self, sleeps):
        handled = []
        ended = []

        def handler(item):
            handled.append(item.uid)
            if item.uid == "2":
                raise MailboxConnectionError("connection lost")
            return KEEP

        pipeline = BatchPipeline(batch_size=3, sleep=sleeps.append)
        report = pipeline.run(items(9), handler, on_session_end=lambda: ended.append(True))
        assert report.state is SessionState.ABORTED
        assert "connection lost" in report.error
        assert report.batches == 1
        assert sorted(handled) == ["1", "2", "3"]
        assert report.errors == 1
        assert ended == [True]
        assert sleeps == []

    def test_session_end_callback_failure_is_logged(self, sleeps, caplog):
        def boom():
            raise OSError("disk full")

        report = BatchPipeline(batch_size=2, sleep=sleeps.append).run(items(2), lambda item: KEEP, boom)
        assert report.state is SessionState.COMPLETED
        assert "disk full" in caplog.text

    def test_report_to_dict(self, sleeps):
        report = BatchPipeline(batch_size=2, sleep=sleeps.append).run(items(3), lambda item: KEEP)
        data = report.to_dict()
        assert data["state"] == "completed"
        assert data["processed"] == 3
        assert data["batches"] == 2

    def test_fetch_states(self, sleeps):
        pipeline = BatchPipeline(batch_size=2, sleep=sleeps.append)
        assert pipeline.state is SessionState.IDLE

        pipeline.begin_fetch()
        assert pipeline.state is SessionState.FETCHING
        pipeline.abort_fetch()
        assert pipeline.state is SessionState.ABORTED

        pipeline.begin_fetch()
        observed = []
        pipeline.run(items(2), lambda item: observed.append(pipeline.state) or KEEP)
        assert observed == [SessionState.DRAINING, SessionState.DRAINING]
        assert pipeline.state is SessionState.COMPLETED

    def test_abort_fetch_only_applies_while_fetching(self, sleeps):
        pipeline = BatchPipeline(batch_size=2, sleep=sleeps.append)
        pipeline.run(items(1), lambda item: KEEP)
        pipeline.abort_fetch()
        assert pipeline.state is SessionState.COMPLETED
