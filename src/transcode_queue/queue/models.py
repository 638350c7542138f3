"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system.
Job records are frozen: every mutation produces a new record that the store
swaps in atomically, so readers never observe a half-applied transition.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Timezone-aware current time used for every job timestamp."""
    return datetime.now(timezone.utc)


class VideoStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        unprocessed → pending     (enqueue with parameters)
        pending → processing      (dispatcher claim)
        processing → completed    (transcode succeeded)
        processing → failed       (encoder error, timeout, lost worker)
        failed → pending          (explicit retry)
    """

    UNPROCESSED = "unprocessed"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Queue view buckets in display order. Failed jobs are surfaced separately.
QUEUE_BUCKETS = (VideoStatus.PENDING, VideoStatus.PROCESSING, VideoStatus.COMPLETED)


class Resolution(str, Enum):
    """Requested output resolution."""

    ORIGINAL = "Original"
    P1080 = "1080p"
    P720 = "720p"

    @property
    def height(self) -> Optional[int]:
        return {Resolution.P1080: 1080, Resolution.P720: 720}.get(self)


class Bitrate(str, Enum):
    """Requested output encoding profile."""

    ORIGINAL = "Original"
    H264 = "h264"
    H264_1000K = "h264@1000k"

    @classmethod
    def _missing_(cls, value):
        # The console submits the 1000k profile as "h2641000k"
        if isinstance(value, str) and value.replace("@", "").lower() == "h2641000k":
            return cls.H264_1000K
        return None


class VideoJob(BaseModel):
    """One video's conversion request and its lifecycle state."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Stable identifier assigned at discovery")
    path: str = Field(..., min_length=1, description="Source path relative to the videos root")
    original_size: int = Field(..., ge=0, description="Source size in bytes")
    resolution: Optional[Resolution] = Field(default=None, description="Set at enqueue")
    bitrate: Optional[Bitrate] = Field(default=None, description="Set at enqueue")
    status: VideoStatus = Field(default=VideoStatus.UNPROCESSED)
    seq: int = Field(default=0, ge=0, description="Insertion sequence (createdAt order)")
    queued_seq: Optional[int] = Field(default=None, description="Submission order for dispatch")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    enqueued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    attempt_count: int = Field(default=0, ge=0, description="Number of claims so far")
    error: Optional[str] = Field(default=None, description="Last failure reason (truncated)")
    output_path: Optional[str] = None
    output_size: Optional[int] = None
    duration_s: Optional[float] = None


# Fields that can never change after discovery.
IMMUTABLE_FIELDS = frozenset({"id", "path", "original_size", "seq", "created_at"})
# Fields that may only be written by the transition into pending.
PARAMETER_FIELDS = frozenset({"resolution", "bitrate"})


class JobPage(BaseModel):
    """One page of a store listing plus the total count at the same snapshot."""

    items: List[VideoJob] = Field(default_factory=list)
    total: int = Field(default=0, ge=0)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str
    from_state: Optional[VideoStatus] = None
    to_state: VideoStatus
    timestamp: datetime = Field(default_factory=utcnow)
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class TranscodeRequest(BaseModel):
    """What a transcoder needs to convert one job."""

    job_id: str
    path: str
    source_path: str = Field(..., description="Absolute source location")
    resolution: Resolution
    bitrate: Bitrate


class TranscodeOutput(BaseModel):
    """Result reported by a transcoder on success."""

    output_path: Optional[str] = None
    output_size: Optional[int] = Field(default=None, ge=0)
    duration_s: float = Field(default=0.0, ge=0.0)
    metadata: Dict[str, str] = Field(default_factory=dict)
