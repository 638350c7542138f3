"""FIFO dispatcher: claims pending jobs for workers within a fixed budget.

A claim is a compare-and-swap ``pending → processing``. When two dispatch
cycles race on the same job exactly one CAS succeeds; the loser sees
StoreConflict and moves on to the next candidate.
"""

import logging
import threading
from datetime import timedelta
from typing import Optional

from .backends import JobStore
from .errors import StoreConflict
from .models import VideoJob, VideoStatus, utcnow

logger = logging.getLogger(__name__)


class Dispatcher:
    """Hands the oldest-submitted pending job to the next free worker slot."""

    def __init__(
        self,
        store: JobStore,
        worker_budget: int = 1,
        poll_interval_s: float = 1.0,
        candidate_batch: int = 8,
        wakeup: Optional[threading.Condition] = None,
    ):
        """Initialize dispatcher.

        Args:
            store: Shared job store
            worker_budget: Maximum jobs processing at once (``W``)
            poll_interval_s: Longest idle wait before re-checking the store
            candidate_batch: Pending jobs fetched per claim attempt
            wakeup: Condition signalled by the enqueue service
        """
        if worker_budget < 1:
            raise ValueError("worker_budget must be >= 1")
        self.store = store
        self.worker_budget = worker_budget
        self.poll_interval_s = poll_interval_s
        self.candidate_batch = candidate_batch
        self.wakeup = wakeup or threading.Condition()
        self._slots = threading.BoundedSemaphore(worker_budget)
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    def claim(self, worker_id: str) -> Optional[VideoJob]:
        """Claim the oldest pending job for ``worker_id``; None if none is ready.

        Does not take a worker slot; callers that bypass ``next_job`` are
        responsible for their own concurrency.
        """
        while True:
            candidates = self.store.pending_candidates(self.candidate_batch)
            if not candidates:
                return None
            for job in candidates:
                try:
                    claimed = self.store.update(
                        job.id,
                        {
                            "status": VideoStatus.PROCESSING,
                            "worker_id": worker_id,
                            "started_at": utcnow(),
                            "heartbeat_at": utcnow(),
                            "finished_at": None,
                            "attempt_count": job.attempt_count + 1,
                        },
                        expected_status=VideoStatus.PENDING,
                    )
                except StoreConflict:
                    logger.debug("Lost claim race on %s; trying next candidate", job.id)
                    continue
                logger.info("Claimed %s for %s", claimed.id, worker_id)
                return claimed
            # Every candidate in the batch was taken by someone else; refetch.

    def next_job(self, worker_id: str, stop: threading.Event) -> Optional[VideoJob]:
        """Block until a slot is free and a job is claimed, or ``stop`` is set.

        Waits are bounded by ``poll_interval_s`` so ``stop`` is honoured
        promptly and no loop ever spins. A returned job holds a slot until
        ``release`` is called.
        """
        while not stop.is_set():
            if not self._slots.acquire(timeout=self.poll_interval_s):
                continue
            with self._in_flight_lock:
                self._in_flight += 1
            try:
                job = self.claim(worker_id)
            except Exception:
                self.release()
                raise
            if job is not None:
                return job
            self.release()
            self.wait_for_work(self.poll_interval_s)
        return None

    @property
    def in_flight(self) -> int:
        """Slots currently taken; counted before the claim so a claimed job is never missed."""
        with self._in_flight_lock:
            return self._in_flight

    def release(self) -> None:
        """Return a worker slot taken by ``next_job``."""
        with self._in_flight_lock:
            self._in_flight -= 1
        self._slots.release()

    def wait_for_work(self, timeout: float) -> None:
        with self.wakeup:
            self.wakeup.wait(timeout)

    def wake_all(self) -> None:
        with self.wakeup:
            self.wakeup.notify_all()

    def reclaim_stale(self, stale_after_s: float) -> int:
        """Fail processing jobs whose worker stopped heartbeating.

        There is no ``processing → pending`` edge, so a lost job is marked
        failed with a reason and can be retried explicitly.

        Returns:
            Count of reclaimed jobs
        """
        cutoff = utcnow() - timedelta(seconds=stale_after_s)
        reclaimed = 0
        for job in self.store.stale_processing(cutoff):
            last_seen = job.heartbeat_at or job.started_at
            try:
                self.store.update(
                    job.id,
                    {
                        "status": VideoStatus.FAILED,
                        "finished_at": utcnow(),
                        "error": f"Worker lost: {job.worker_id} silent since {last_seen}",
                    },
                    expected_status=VideoStatus.PROCESSING,
                )
            except StoreConflict:
                # Worker finished the job after all
                continue
            logger.warning("Reclaimed stale job %s from %s", job.id, job.worker_id)
            reclaimed += 1
        return reclaimed
