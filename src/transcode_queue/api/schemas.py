"""Wire models for the console API.

Field names are camelCase to match the console's JSON; conversion from the
internal ``VideoJob`` happens only here.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from transcode_queue.queue.models import StateTransition, VideoJob, VideoStatus
from transcode_queue.queue.query import QueuePage

# Display colour per status, used by the console's badges
STATUS_COLORS = {
    VideoStatus.UNPROCESSED: "secondary",
    VideoStatus.PENDING: "warning",
    VideoStatus.PROCESSING: "primary",
    VideoStatus.COMPLETED: "success",
    VideoStatus.FAILED: "danger",
}


class VideoOut(BaseModel):
    id: str
    path: str
    originalSize: int  # noqa: N815
    resolution: str | None = None
    bitrate: str | None = None
    status: str
    statusColor: str  # noqa: N815
    error: str | None = None
    outputPath: str | None = None  # noqa: N815
    createdAt: datetime  # noqa: N815
    updatedAt: datetime  # noqa: N815

    @classmethod
    def from_job(cls, job: VideoJob) -> "VideoOut":
        return cls(
            id=job.id,
            path=job.path,
            originalSize=job.original_size,
            resolution=job.resolution.value if job.resolution else None,
            bitrate=job.bitrate.value if job.bitrate else None,
            status=job.status.value,
            statusColor=STATUS_COLORS[job.status],
            error=job.error,
            outputPath=job.output_path,
            createdAt=job.created_at,
            updatedAt=job.updated_at,
        )


def dump_video(job: VideoJob) -> dict:
    """Serialize a job, omitting unset optional fields (resolution/bitrate on unprocessed)."""
    return VideoOut.from_job(job).model_dump(mode="json", exclude_none=True)


class TransitionOut(BaseModel):
    fromState: str | None  # noqa: N815
    toState: str  # noqa: N815
    timestamp: datetime
    workerId: str | None = None  # noqa: N815
    error: str | None = None

    @classmethod
    def from_transition(cls, t: StateTransition) -> "TransitionOut":
        return cls(
            fromState=t.from_state.value if t.from_state else None,
            toState=t.to_state.value,
            timestamp=t.timestamp,
            workerId=t.worker_id,
            error=t.error_snippet,
        )


class ProcessRequest(BaseModel):
    """Body of ``POST /api/videos/process``: the console posts the whole video back."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    path: str | None = None
    originalSize: int | None = None  # noqa: N815
    resolution: str = Field(..., min_length=1)
    bitrate: str = Field(..., min_length=1)
    status: str | None = Field(default=None, description="Ignored; always becomes pending")


class StatusPatch(BaseModel):
    status: str = Field(..., min_length=1)
    error: str | None = Field(default=None, max_length=2000)
    workerId: str | None = None  # noqa: N815


def queue_response(page: QueuePage) -> dict:
    """Shape a QueuePage as ``{queue: {...buckets, total}, pagination: {...}}``."""
    queue = {
        status.value: [dump_video(job) for job in jobs] for status, jobs in page.buckets.items()
    }
    queue["total"] = page.pagination.total
    return {
        "queue": queue,
        "pagination": {
            "page": page.pagination.page,
            "pageSize": page.pagination.page_size,
            "total": page.pagination.total,
            "pages": page.pagination.pages,
        },
    }
