"""State transition validation for video jobs.

Legal path: unprocessed → pending → processing → completed | failed,
plus the retry edge failed → pending. Completed is terminal.
"""

from typing import FrozenSet, Tuple

from .errors import InvalidState
from .models import VideoStatus

_TRANSITIONS: FrozenSet[Tuple[VideoStatus, VideoStatus]] = frozenset({
    (VideoStatus.UNPROCESSED, VideoStatus.PENDING),
    (VideoStatus.PENDING, VideoStatus.PROCESSING),
    (VideoStatus.PROCESSING, VideoStatus.COMPLETED),
    (VideoStatus.PROCESSING, VideoStatus.FAILED),
    (VideoStatus.FAILED, VideoStatus.PENDING),
})

# Statuses from which a job may be admitted into the pending bucket.
ENQUEUEABLE: FrozenSet[VideoStatus] = frozenset({VideoStatus.UNPROCESSED, VideoStatus.FAILED})


def can_transition(current: VideoStatus, new: VideoStatus) -> bool:
    return (VideoStatus(current), VideoStatus(new)) in _TRANSITIONS


def check_transition(job_id: str, current: VideoStatus, new: VideoStatus) -> None:
    """Raise InvalidState unless ``current → new`` is a legal edge."""
    if not can_transition(current, new):
        raise InvalidState(
            f"Illegal transition {VideoStatus(current).value} → {VideoStatus(new).value}",
            job_id=job_id,
        )
