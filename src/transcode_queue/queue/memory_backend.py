"""In-memory JobStore used by the test-suite and ``storage.backend: memory``.

Concurrency model:
- Records are frozen; an update builds a new record and swaps the reference.
- Each job has its own lock, so transitions on unrelated jobs never contend.
- ``_registry_lock`` only guards dict membership and reference snapshots; it
  is never held while a job lock is being waited on, so there is no nested
  acquisition across jobs.
"""

import itertools
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set

from .backends import DEFAULT_LIST_ORDER, JobStore
from .errors import NotFound, StoreConflict
from .models import JobPage, StateTransition, VideoJob, VideoStatus


class InMemoryJobStore(JobStore):
    """Dictionary-backed store with per-job locks."""

    def __init__(self):
        self._jobs: Dict[str, VideoJob] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._transitions: Dict[str, List[StateTransition]] = defaultdict(list)
        self._registry_lock = threading.Lock()
        self._seq = itertools.count(1)
        self._queued_seq = itertools.count(1)

    def create(self, job: VideoJob) -> VideoJob:
        with self._registry_lock:
            if job.id in self._jobs:
                raise StoreConflict(f"Job already exists: {job.id}", job_id=job.id)
            stored = job.model_copy(update={"seq": next(self._seq)})
            self._jobs[job.id] = stored
            self._locks[job.id] = threading.Lock()
        return stored

    def get(self, job_id: str) -> VideoJob:
        with self._registry_lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)
        return job

    def update(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[VideoStatus] = None,
    ) -> VideoJob:
        with self._registry_lock:
            lock = self._locks.get(job_id)
        if lock is None:
            raise NotFound(f"Job not found: {job_id}", job_id=job_id)

        with lock:
            current = self._jobs[job_id]
            queued_seq = None
            if fields.get("status") == VideoStatus.PENDING:
                with self._registry_lock:
                    queued_seq = next(self._queued_seq)
            new, transition = self._apply(current, fields, expected_status, queued_seq)
            with self._registry_lock:
                self._jobs[job_id] = new
                if transition is not None:
                    self._transitions[job_id].append(transition)
        return new

    def _snapshot(self) -> List[VideoJob]:
        with self._registry_lock:
            return list(self._jobs.values())

    def list_jobs(
        self,
        statuses: Optional[Sequence[VideoStatus]] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> JobPage:
        order = tuple(VideoStatus(s) for s in statuses) if statuses else DEFAULT_LIST_ORDER
        wanted = set(order)
        matching = sorted(
            (job for job in self._snapshot() if job.status in wanted),
            key=self._order_key(order),
        )
        if page_size is None:
            return JobPage(items=matching, total=len(matching))
        offset = (max(page, 1) - 1) * page_size
        return JobPage(items=matching[offset:offset + page_size], total=len(matching))

    def pending_candidates(self, limit: int) -> List[VideoJob]:
        pending = [job for job in self._snapshot() if job.status == VideoStatus.PENDING]
        pending.sort(key=lambda job: (job.queued_seq or 0, job.seq))
        return pending[:limit]

    def stale_processing(self, cutoff: datetime) -> List[VideoJob]:
        stale = []
        for job in self._snapshot():
            if job.status != VideoStatus.PROCESSING:
                continue
            last_seen = job.heartbeat_at or job.started_at or job.updated_at
            if last_seen < cutoff:
                stale.append(job)
        return stale

    def counts(self) -> Dict[VideoStatus, int]:
        counts = {status: 0 for status in VideoStatus}
        for job in self._snapshot():
            counts[job.status] += 1
        return counts

    def transitions(self, job_id: str) -> List[StateTransition]:
        with self._registry_lock:
            if job_id not in self._jobs:
                raise NotFound(f"Job not found: {job_id}", job_id=job_id)
            return list(self._transitions.get(job_id, []))

    def known_paths(self) -> Set[str]:
        return {job.path for job in self._snapshot()}
