# supplytrace/notarization.py
"""
Fire-and-forget notarization with bounded retry.

The reconciliation decision is always committed locally first. The ledger
write is attempted once inline; if the ledger is unavailable the job is kept
in an observable pending queue and retried with exponential backoff until it
succeeds (the transaction reference is then backfilled through the job's
callback) or exhausts its attempts and moves to the failed list.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from supplytrace.blockchain import LedgerClient, payload_hash
from supplytrace.errors import LedgerUnavailableError, NotFoundError

logger = logging.getLogger(__name__)

Backfill = Callable[[str], None]


@dataclass
class NotarizationJob:
    jobId: str
    eventType: str
    subjectId: str
    fields: Dict[str, Any]
    payloadHash: str
    createdAt: datetime
    attempts: int = 0
    nextAttemptAt: float = 0.0
    lastError: Optional[str] = None
    transactionRef: Optional[str] = None
    on_success: Optional[Backfill] = field(default=None, repr=False, compare=False)


class NotarizationQueue:
    def __init__(
        self,
        ledger: LedgerClient,
        max_attempts: int = 5,
        backoff_seconds: float = 2.0,
        max_backoff_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._pending: Dict[str, NotarizationJob] = {}
        self._failed: Dict[str, NotarizationJob] = {}
        # job ids currently being sent; a claimed job is never attempted twice at once
        self._in_flight: Set[str] = set()

        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, ledger: LedgerClient, config) -> "NotarizationQueue":
        return cls(
            ledger,
            max_attempts=config.notarize_max_attempts,
            backoff_seconds=config.notarize_backoff_seconds,
            max_backoff_seconds=config.notarize_max_backoff_seconds,
        )

    # -------------------------------------------------
    # PUBLIC API
    # -------------------------------------------------
    def submit(
        self,
        event_type: str,
        subject_id: str,
        fields: Dict[str, Any],
        on_success: Optional[Backfill] = None,
        inline: bool = True,
    ) -> Optional[str]:
        """
        Queue one event for notarization.

        Returns the transaction reference when the inline attempt succeeds,
        otherwise None (the job stays pending). Never raises for ledger
        failures.
        """
        job = NotarizationJob(
            jobId=str(uuid.uuid4()),
            eventType=event_type,
            subjectId=subject_id,
            fields=dict(fields),
            payloadHash=payload_hash(fields),
            createdAt=datetime.now(timezone.utc),
            on_success=on_success,
        )

        if not inline:
            with self._lock:
                self._pending[job.jobId] = job
            return None

        with self._lock:
            self._in_flight.add(job.jobId)
        return self._attempt(job)

    def retry_pending(self) -> int:
        """Attempt every due pending job once. Returns how many succeeded."""
        now = self._clock()
        with self._lock:
            due = [
                j for j in self._pending.values()
                if j.nextAttemptAt <= now and j.jobId not in self._in_flight
            ]
            self._in_flight.update(j.jobId for j in due)

        done = 0
        for job in due:
            if self._attempt(job) is not None:
                done += 1
        return done

    def pending(self) -> List[NotarizationJob]:
        with self._lock:
            return [replace(j) for j in self._pending.values()]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def failed(self) -> List[NotarizationJob]:
        with self._lock:
            return [replace(j) for j in self._failed.values()]

    def requeue_failed(self, job_id: str) -> None:
        """Give an exhausted job a fresh set of attempts."""
        with self._lock:
            job = self._failed.pop(job_id, None)
            if job is None:
                raise NotFoundError(f"Failed notarization job not found: {job_id}")
            job.attempts = 0
            job.nextAttemptAt = 0.0
            self._pending[job.jobId] = job

    # -------------------------------------------------
    # Background worker
    # -------------------------------------------------
    def start(self, interval_seconds: float = 5.0) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._run, args=(interval_seconds,), name="notarization-worker", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def _run(self, interval_seconds: float) -> None:
        while not self._stop.wait(interval_seconds):
            try:
                self.retry_pending()
            except Exception:
                logger.exception("Notarization retry sweep failed")

    # -------------------------------------------------
    # INTERNAL
    # -------------------------------------------------
    def _backoff(self, attempts: int) -> float:
        return min(self.max_backoff_seconds, self.backoff_seconds * (2 ** max(0, attempts - 1)))

    def _attempt(self, job: NotarizationJob) -> Optional[str]:
        """Send a job the caller has already claimed in `_in_flight`."""
        try:
            return self._send(job)
        finally:
            with self._lock:
                self._in_flight.discard(job.jobId)

    def _send(self, job: NotarizationJob) -> Optional[str]:
        with self._lock:
            job.attempts += 1
        try:
            tx_ref = self.ledger.record_event(job.eventType, job.payloadHash, job.fields)
        except LedgerUnavailableError as e:
            self._record_failure(job, str(e))
            logger.warning(
                "Ledger unavailable for %s %s (attempt %d/%d): %s",
                job.eventType, job.subjectId, job.attempts, self.max_attempts, e,
            )
            return None
        except Exception as e:
            self._record_failure(job, repr(e))
            logger.error(
                "Unexpected ledger error for %s %s (attempt %d/%d)",
                job.eventType, job.subjectId, job.attempts, self.max_attempts,
                exc_info=True,
            )
            return None

        job.transactionRef = tx_ref
        with self._lock:
            self._pending.pop(job.jobId, None)

        logger.info("%s %s notarized: %s", job.eventType, job.subjectId, tx_ref)

        if job.on_success is not None:
            try:
                job.on_success(tx_ref)
            except Exception:
                logger.error(
                    "Backfill of ledger reference %s for %s failed", tx_ref, job.subjectId,
                    exc_info=True,
                )
        return tx_ref

    def _record_failure(self, job: NotarizationJob, error: str) -> None:
        job.lastError = error
        with self._lock:
            if job.attempts >= self.max_attempts:
                self._pending.pop(job.jobId, None)
                self._failed[job.jobId] = job
                logger.error(
                    "Giving up notarizing %s %s after %d attempts", job.eventType, job.subjectId, job.attempts
                )
                return
            job.nextAttemptAt = self._clock() + self._backoff(job.attempts)
            self._pending[job.jobId] = job
