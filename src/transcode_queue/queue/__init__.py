"""Video transcoding job queue: store, admission, dispatch, workers and views."""

from .backends import JobStore, Transcoder
from .dispatcher import Dispatcher
from .enqueue import EnqueueService
from .errors import (
    ConfigError,
    EncodeFailure,
    InvalidRequest,
    InvalidState,
    NotFound,
    QueueError,
    StoreConflict,
    TranscodeTimeout,
)
from .memory_backend import InMemoryJobStore
from .models import (
    QUEUE_BUCKETS,
    Bitrate,
    JobPage,
    Resolution,
    StateTransition,
    TranscodeOutput,
    TranscodeRequest,
    VideoJob,
    VideoStatus,
)
from .query import Pagination, QueryService, QueuePage
from .sqlite_backend import SQLiteJobStore
from .state import can_transition, check_transition
from .worker import JobWorkerPool

__all__ = [
    "JobStore",
    "Transcoder",
    "Dispatcher",
    "EnqueueService",
    "ConfigError",
    "EncodeFailure",
    "InvalidRequest",
    "InvalidState",
    "NotFound",
    "QueueError",
    "StoreConflict",
    "TranscodeTimeout",
    "InMemoryJobStore",
    "QUEUE_BUCKETS",
    "Bitrate",
    "JobPage",
    "Resolution",
    "StateTransition",
    "TranscodeOutput",
    "TranscodeRequest",
    "VideoJob",
    "VideoStatus",
    "Pagination",
    "QueryService",
    "QueuePage",
    "SQLiteJobStore",
    "can_transition",
    "check_transition",
    "JobWorkerPool",
]
