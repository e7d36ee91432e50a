"""Unit tests for NotarizationQueue retry, backoff and backfill."""

import threading

import pytest

from supplytrace.blockchain import payload_hash
from supplytrace.errors import LedgerUnavailableError, NotFoundError
from supplytrace.notarization import NotarizationQueue


class TestSubmit:

    def test_inline_success_returns_reference(self, queue, ledger):
        seen = []

        ref = queue.submit("TRANSFER_CONFIRMED", "t-1", {"qty": "5"}, on_success=seen.append)

        assert ref is not None
        assert seen == [ref]
        assert queue.pending_count() == 0
        assert ledger.calls[0][1] == payload_hash({"qty": "5"})

    def test_failure_queues_job(self, queue, ledger):
        ledger.fail = True

        assert queue.submit("TRANSFER_CONFIRMED", "t-1", {"qty": "5"}) is None

        jobs = queue.pending()
        assert len(jobs) == 1
        assert jobs[0].attempts == 1
        assert "rpc timeout" in jobs[0].lastError

    def test_deferred_submit_skips_inline_attempt(self, queue, ledger):
        assert queue.submit("RISK_ASSESSED", "b-1", {}, inline=False) is None
        assert ledger.calls == []
        assert queue.pending_count() == 1

    def test_unexpected_ledger_error_is_contained(self, monotonic):
        class Exploding:
            def record_event(self, *args):
                raise KeyError("abi mismatch")

        q = NotarizationQueue(Exploding(), max_attempts=2, clock=monotonic)

        assert q.submit("X", "s-1", {}) is None
        assert q.pending_count() == 1


class TestRetry:

    def test_backoff_delays_retry(self, queue, ledger, monotonic):
        ledger.fail = True
        queue.submit("E", "s-1", {})
        ledger.fail = False

        monotonic.advance(1)
        assert queue.retry_pending() == 0

        monotonic.advance(1.5)
        assert queue.retry_pending() == 1
        assert queue.pending_count() == 0

    def test_backoff_is_exponential_and_capped(self, ledger):
        q = NotarizationQueue(ledger, backoff_seconds=2.0, max_backoff_seconds=10.0)

        assert [q._backoff(n) for n in (1, 2, 3, 4, 5)] == [2.0, 4.0, 8.0, 10.0, 10.0]

    def test_exhausted_job_moves_to_failed_and_can_be_requeued(self, queue, ledger, monotonic):
        ledger.fail = True
        queue.submit("E", "s-1", {})
        for _ in range(5):
            monotonic.advance(100)
            queue.retry_pending()

        assert queue.pending_count() == 0
        failed = queue.failed()
        assert len(failed) == 1
        assert failed[0].attempts == 3

        ledger.fail = False
        queue.requeue_failed(failed[0].jobId)
        assert queue.retry_pending() == 1
        assert queue.failed() == []

    def test_requeue_unknown_job(self, queue):
        with pytest.raises(NotFoundError):
            queue.requeue_failed("nope")

    def test_backfill_error_does_not_break_queue(self, queue):
        def bad_backfill(ref):
            raise RuntimeError("store down")

        assert queue.submit("E", "s-1", {}, on_success=bad_backfill) is not None
        assert queue.pending_count() == 0


class TestConcurrentRetry:

    def test_claimed_job_is_not_sent_twice(self, monotonic):
        entered = threading.Event()
        release = threading.Event()
        calls = []

        class SlowLedger:
            fail = True

            def record_event(self, event_type, digest, fields):
                calls.append(event_type)
                if self.fail:
                    raise LedgerUnavailableError("rpc timeout")
                entered.set()
                release.wait(5)
                return "0x" + "ab" * 32

        ledger = SlowLedger()
        q = NotarizationQueue(ledger, max_attempts=3, clock=monotonic)
        q.submit("TRANSFER_CONFIRMED", "t-1", {"qty": "5"})
        ledger.fail = False
        monotonic.advance(100)

        worker = threading.Thread(target=q.retry_pending)
        worker.start()
        assert entered.wait(5)

        assert q.retry_pending() == 0

        release.set()
        worker.join(5)
        assert calls == ["TRANSFER_CONFIRMED", "TRANSFER_CONFIRMED"]
        assert q.pending_count() == 0


class TestWorker:

    def test_start_and_stop(self, queue):
        queue.start(interval_seconds=0.01)
        queue.start(interval_seconds=0.01)
        queue.stop(timeout=1.0)

        assert queue._worker is None
