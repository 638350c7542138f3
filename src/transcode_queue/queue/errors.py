"""Exception taxonomy for the transcoding queue.

Propagation policy:
- NotFound / InvalidState / InvalidRequest reach the caller (HTTP 404/409/4xx).
- StoreConflict is raised by the store when a compare-and-swap loses a race;
  the dispatcher retries internally and it never reaches the console.
- EncodeFailure / TranscodeTimeout are raised by transcoders, caught by the
  worker and recorded on the job as ``failed``.
"""

from typing import Optional


class QueueError(Exception):
    """Base class for all queue errors."""

    code = "QUEUE_ERROR"

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class NotFound(QueueError):
    """Unknown job id."""

    code = "NOT_FOUND"


class InvalidState(QueueError):
    """Operation not allowed from the job's current status."""

    code = "INVALID_STATE"


class InvalidRequest(QueueError, ValueError):
    """Malformed request (bad parameter values, mismatched path)."""

    code = "INVALID_REQUEST"


class StoreConflict(QueueError):
    """Lost a compare-and-swap race on a job's status."""

    code = "STORE_CONFLICT"


class EncodeFailure(QueueError):
    """Transcoder reported an error for a job."""

    code = "ENCODE_FAILURE"


class TranscodeTimeout(EncodeFailure):
    """Transcoder exceeded its allotted time."""

    code = "TIMEOUT"


class ConfigError(Exception):
    """Configuration file could not be loaded or validated."""
