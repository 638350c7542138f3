"""Admission of conversion requests into the pending bucket.

This is the only write path into ``pending``: no job enters the queue
without an explicit resolution and bitrate.
"""

import logging
import threading
from typing import Optional, Union

from .backends import JobStore
from .errors import InvalidRequest, InvalidState, StoreConflict
from .models import Bitrate, Resolution, VideoJob, VideoStatus, utcnow
from .state import ENQUEUEABLE

logger = logging.getLogger(__name__)


def parse_resolution(value: Union[str, Resolution]) -> Resolution:
    try:
        return Resolution(value)
    except ValueError:
        allowed = ", ".join(r.value for r in Resolution)
        raise InvalidRequest(f"Unknown resolution '{value}' (expected one of: {allowed})")


def parse_bitrate(value: Union[str, Bitrate]) -> Bitrate:
    try:
        return Bitrate(value)
    except ValueError:
        allowed = ", ".join(b.value for b in Bitrate)
        raise InvalidRequest(f"Unknown bitrate '{value}' (expected one of: {allowed})")


class EnqueueService:
    """Validates and admits conversion requests.

    ``notify`` is signalled after every successful admission so an idle
    dispatcher wakes up without waiting for its poll interval.
    """

    def __init__(self, store: JobStore, notify: Optional[threading.Condition] = None):
        self.store = store
        self.notify = notify

    def enqueue(
        self,
        job_id: str,
        resolution: Union[str, Resolution],
        bitrate: Union[str, Bitrate],
    ) -> VideoJob:
        """Set parameters and move a job into pending.

        Args:
            job_id: Job identifier
            resolution: Requested output resolution
            bitrate: Requested encoding profile

        Returns:
            The pending job

        Raises:
            InvalidRequest: Unknown resolution/bitrate (no state is touched)
            NotFound: Unknown job id
            InvalidState: Job is already pending/processing/completed, or a
                failed job is resubmitted with different parameters
        """
        resolution = parse_resolution(resolution)
        bitrate = parse_bitrate(bitrate)

        job = self.store.get(job_id)
        if job.status not in ENQUEUEABLE:
            raise InvalidState(
                f"Job {job_id} is already {job.status.value}", job_id=job_id
            )
        if job.status == VideoStatus.FAILED and (job.resolution, job.bitrate) != (resolution, bitrate):
            raise InvalidState(
                f"Job {job_id} was submitted as {job.resolution.value}/{job.bitrate.value}; "
                "parameters cannot change on retry",
                job_id=job_id,
            )

        return self._admit(job, {"resolution": resolution, "bitrate": bitrate})

    def retry(self, job_id: str) -> VideoJob:
        """Move a failed job back to pending with its original parameters."""
        job = self.store.get(job_id)
        if job.status != VideoStatus.FAILED:
            raise InvalidState(
                f"Only failed jobs can be retried; {job_id} is {job.status.value}",
                job_id=job_id,
            )
        return self._admit(job, {})

    def retry_all_failed(self) -> int:
        """Retry every failed job; returns how many were moved to pending."""
        count = 0
        for job in self.store.list_jobs([VideoStatus.FAILED]).items:
            try:
                self.retry(job.id)
                count += 1
            except InvalidState:
                # Someone else retried it first
                continue
        return count

    def _admit(self, job: VideoJob, fields: dict) -> VideoJob:
        fields = dict(
            fields,
            status=VideoStatus.PENDING,
            enqueued_at=utcnow(),
            worker_id=None,
            started_at=None,
            finished_at=None,
            heartbeat_at=None,
            error=None,
        )
        # CAS on the status we validated against; a concurrent enqueue of the
        # same job loses here and is reported as a duplicate submission.
        try:
            pending = self.store.update(job.id, fields, expected_status=job.status)
        except StoreConflict:
            raise InvalidState(f"Job {job.id} was submitted concurrently", job_id=job.id)

        logger.info(
            "Enqueued %s (%s, %s)", job.id, pending.resolution.value, pending.bitrate.value
        )
        if self.notify is not None:
            with self.notify:
                self.notify.notify_all()
        return pending
