"""Read-side views over the job store for the moderation console."""

import math
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .backends import JobStore
from .errors import InvalidRequest
from .models import QUEUE_BUCKETS, VideoJob, VideoStatus

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

# Filter values meaning "every queue bucket".
_ALL_FILTERS = {"", "all"}


class Pagination(BaseModel):
    page: int = Field(..., ge=1)
    page_size: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    pages: int = Field(..., ge=0)


class QueuePage(BaseModel):
    """One page of the queue, split into buckets, plus pagination metadata."""

    buckets: Dict[VideoStatus, List[VideoJob]]
    pagination: Pagination

    @property
    def items(self) -> List[VideoJob]:
        """Page items in bucket order."""
        return [job for jobs in self.buckets.values() for job in jobs]


def parse_status_filter(value: Union[None, str, VideoStatus]) -> Optional[VideoStatus]:
    """Map a query-string status to a VideoStatus; None means all buckets."""
    if value is None or (isinstance(value, str) and value.strip().lower() in _ALL_FILTERS):
        return None
    try:
        status = VideoStatus(str(value).strip().lower())
    except ValueError:
        raise InvalidRequest(f"Unknown status filter '{value}'")
    if status == VideoStatus.UNPROCESSED:
        raise InvalidRequest("Unprocessed videos are not part of the queue")
    return status


class QueryService:
    """Serves the console's two read patterns.

    Pagination is computed from one store snapshot per call. Between two
    calls a job may move to another bucket and therefore another page; the
    console re-fetches on every page or filter change.
    """

    def __init__(
        self,
        store: JobStore,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def unprocessed(self) -> List[VideoJob]:
        """Every unprocessed job, oldest first (unpaginated)."""
        return self.store.list_jobs([VideoStatus.UNPROCESSED]).items

    def queue_page(
        self,
        page: int = 1,
        page_size: Optional[int] = None,
        status: Union[None, str, VideoStatus] = None,
    ) -> QueuePage:
        """Paginated, status-filtered view of the queue.

        Args:
            page: 1-indexed page; values below 1 are treated as 1
            page_size: Items per page; out-of-range values fall back to the default
            status: Single status to filter on; None/""/"all" unions the
                pending, processing and completed buckets in that order

        Returns:
            QueuePage with ``pages = ceil(total / page_size)``; a page past the
            end has no items but still reports the correct total
        """
        page = max(page or 1, 1)
        if page_size is None or page_size < 1 or page_size > self.max_page_size:
            page_size = self.default_page_size

        selected = parse_status_filter(status)
        statuses = [selected] if selected else list(QUEUE_BUCKETS)

        result = self.store.list_jobs(statuses, page=page, page_size=page_size)

        buckets: Dict[VideoStatus, List[VideoJob]] = {
            s: [] for s in (*QUEUE_BUCKETS, VideoStatus.FAILED)
        }
        for job in result.items:
            buckets[job.status].append(job)

        return QueuePage(
            buckets=buckets,
            pagination=Pagination(
                page=page,
                page_size=page_size,
                total=result.total,
                pages=math.ceil(result.total / page_size),
            ),
        )

    def stats(self) -> Dict[str, int]:
        counts = self.store.counts()
        stats = {status.value: counts[status] for status in VideoStatus}
        stats["total"] = sum(counts.values())
        return stats
