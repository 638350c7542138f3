"""Abstract base classes for job stores and transcoders.

This module defines the interfaces the queue services are written against.
The in-memory store backs the test-suite; the SQLite store is the durable
production backend. Both share the field validation in ``JobStore._apply``
so transition rules live in one place.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import InvalidRequest, InvalidState, StoreConflict
from .models import (
    IMMUTABLE_FIELDS,
    PARAMETER_FIELDS,
    JobPage,
    StateTransition,
    TranscodeOutput,
    TranscodeRequest,
    VideoJob,
    VideoStatus,
    utcnow,
)
from .state import check_transition

# Order used when a listing is not restricted to particular statuses.
DEFAULT_LIST_ORDER: Tuple[VideoStatus, ...] = tuple(VideoStatus)


class JobStore(ABC):
    """Abstract job store.

    Implementations must provide:
    - Per-job atomic updates with compare-and-swap on ``status``
    - Listings that reflect one consistent snapshot per call
    - Stable ordering: bucket order, then insertion order (``seq``)
    """

    @abstractmethod
    def create(self, job: VideoJob) -> VideoJob:
        """Insert a new job, assigning its insertion sequence.

        Raises:
            StoreConflict: If a job with the same id already exists
        """

    @abstractmethod
    def get(self, job_id: str) -> VideoJob:
        """Fetch one job.

        Raises:
            NotFound: If the id is unknown
        """

    @abstractmethod
    def update(
        self,
        job_id: str,
        fields: Mapping[str, Any],
        expected_status: Optional[VideoStatus] = None,
    ) -> VideoJob:
        """Atomically apply ``fields`` to one job.

        Args:
            job_id: Job identifier
            fields: Field values to write (status changes are validated)
            expected_status: Compare-and-swap guard; the write only happens if
                the job is currently in this status

        Returns:
            The updated job

        Raises:
            NotFound: Unknown id
            StoreConflict: ``expected_status`` did not match
            InvalidState: Illegal transition or write to an immutable field
        """

    @abstractmethod
    def list_jobs(
        self,
        statuses: Optional[Sequence[VideoStatus]] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> JobPage:
        """List jobs grouped by status (in ``statuses`` order), then by seq.

        ``page_size=None`` returns every matching job. Pages past the end are
        empty; ``total`` always counts the whole filtered set.
        """

    @abstractmethod
    def pending_candidates(self, limit: int) -> List[VideoJob]:
        """Oldest-submitted pending jobs, in dispatch order."""

    @abstractmethod
    def stale_processing(self, cutoff: datetime) -> List[VideoJob]:
        """Processing jobs whose last heartbeat (or start) is before ``cutoff``."""

    @abstractmethod
    def counts(self) -> Dict[VideoStatus, int]:
        """Number of jobs per status."""

    @abstractmethod
    def transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail of status changes for one job, oldest first."""

    @abstractmethod
    def known_paths(self) -> Set[str]:
        """Every source path already recorded (used by discovery)."""

    def release_thread(self) -> None:
        """Drop resources held for the calling thread (short-lived threads call this on exit)."""

    def close(self) -> None:
        """Release backend resources."""

    @staticmethod
    def _apply(
        current: VideoJob,
        fields: Mapping[str, Any],
        expected_status: Optional[VideoStatus],
        queued_seq: Optional[int] = None,
    ) -> Tuple[VideoJob, Optional[StateTransition]]:
        """Validate an update against ``current`` and build the new record.

        ``queued_seq`` is supplied by the backend and stamped on the record
        when the update moves the job into pending.
        """
        if expected_status is not None and current.status != VideoStatus(expected_status):
            raise StoreConflict(
                f"Expected status {VideoStatus(expected_status).value}, "
                f"found {current.status.value}",
                job_id=current.id,
            )

        unknown = set(fields) - set(VideoJob.model_fields)
        if unknown:
            raise InvalidRequest(f"Unknown job fields: {sorted(unknown)}", job_id=current.id)

        for name in IMMUTABLE_FIELDS & set(fields):
            if fields[name] != getattr(current, name):
                raise InvalidState(f"Field '{name}' is immutable", job_id=current.id)

        new_status = VideoStatus(fields.get("status", current.status))
        status_changed = new_status != current.status
        if status_changed:
            check_transition(current.id, current.status, new_status)

        entering_from_unprocessed = (
            status_changed
            and current.status == VideoStatus.UNPROCESSED
            and new_status == VideoStatus.PENDING
        )
        for name in PARAMETER_FIELDS & set(fields):
            if fields[name] is None and getattr(current, name) is None:
                continue
            if not entering_from_unprocessed and fields[name] != getattr(current, name):
                raise InvalidState(
                    f"Field '{name}' can only be set when the job is enqueued",
                    job_id=current.id,
                )

        data = current.model_dump()
        data.update(fields)
        data["updated_at"] = utcnow()
        if status_changed and new_status == VideoStatus.PENDING:
            data["queued_seq"] = queued_seq
        new = VideoJob.model_validate(data)

        if new.status == VideoStatus.PENDING and (new.resolution is None or new.bitrate is None):
            raise InvalidRequest(
                "A job cannot be pending without resolution and bitrate", job_id=current.id
            )

        transition = None
        if status_changed:
            error = new.error if new_status == VideoStatus.FAILED else None
            transition = StateTransition(
                job_id=current.id,
                from_state=current.status,
                to_state=new_status,
                timestamp=new.updated_at,
                worker_id=new.worker_id,
                error_snippet=error[:200] if error else None,
            )
        return new, transition

    @staticmethod
    def _order_key(statuses: Sequence[VideoStatus]):
        rank = {VideoStatus(s): i for i, s in enumerate(statuses)}
        return lambda job: (rank[job.status], job.seq)


class Transcoder(ABC):
    """Opaque transcoding engine invoked by the worker pool."""

    @abstractmethod
    def transcode(self, request: TranscodeRequest, cancel: threading.Event) -> TranscodeOutput:
        """Convert one source file.

        Args:
            request: Source location and requested parameters
            cancel: Set by the worker when the job timed out; implementations
                must stop promptly once it is set

        Returns:
            TranscodeOutput with output metadata

        Raises:
            EncodeFailure: The conversion failed
            TranscodeTimeout: The conversion was stopped for taking too long
        """
