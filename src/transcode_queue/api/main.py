from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware

from transcode_queue.api.schemas import (
    ProcessRequest,
    StatusPatch,
    TransitionOut,
    dump_video,
    queue_response,
)
from transcode_queue.config import resolve_config
from transcode_queue.discovery import discover
from transcode_queue.models import QueueConfig
from transcode_queue.queue.backends import JobStore, Transcoder
from transcode_queue.queue.errors import (
    InvalidRequest,
    InvalidState,
    NotFound,
    QueueError,
    StoreConflict,
)
from transcode_queue.queue.models import VideoStatus, utcnow
from transcode_queue.runtime import QueueRuntime, build_runtime

logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    InvalidState: status.HTTP_409_CONFLICT,
    StoreConflict: status.HTTP_409_CONFLICT,
    InvalidRequest: status.HTTP_400_BAD_REQUEST,
}


def _http_error(e: QueueError) -> HTTPException:
    code = next(
        (c for exc_type, c in _ERROR_STATUS.items() if isinstance(e, exc_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(
        status_code=code,
        detail={"code": e.code, "message": e.message, "id": e.job_id},
    )


def _runtime(request: Request) -> QueueRuntime:
    return request.app.state.runtime


def create_app(
    config: QueueConfig | None = None,
    store: JobStore | None = None,
    transcoder: Transcoder | None = None,
) -> FastAPI:
    """Build the console API around one queue runtime.

    The store and services are created eagerly and kept on ``app.state``;
    the lifespan only starts and stops the in-process worker pool.
    """
    config = config or resolve_config()
    runtime = build_runtime(config, store=store, transcoder=transcoder)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = runtime.worker_pool() if config.workers.enabled else None
        if pool is not None:
            pool.start()
        app.state.pool = pool
        try:
            yield
        finally:
            if pool is not None:
                pool.stop()
            runtime.close()

    app = FastAPI(title="Transcode Queue", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.pool = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health_check(request: Request):
        pool = request.app.state.pool
        return {
            "status": "healthy",
            "workers": pool.n_workers if pool else 0,
            "active": pool.active if pool else 0,
        }

    @app.get("/api/videos/unprocessed")
    def list_unprocessed(request: Request):
        rt = _runtime(request)
        if rt.config.api.discover_on_list:
            try:
                discover(
                    rt.store,
                    rt.config.videos.root,
                    extensions=rt.config.videos.extensions,
                    recursive=rt.config.videos.recursive,
                )
            except FileNotFoundError as e:
                logger.error("Discovery failed: %s", e)
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail={"code": "VIDEOS_ROOT_MISSING", "message": str(e)},
                )
        return [dump_video(job) for job in rt.query.unprocessed()]

    @app.post("/api/videos/process")
    def process_video(data: ProcessRequest, request: Request):
        rt = _runtime(request)
        try:
            job = rt.store.get(data.id)
            if data.path is not None and data.path != job.path:
                raise InvalidRequest(
                    f"Path '{data.path}' does not match job {job.id}", job_id=job.id
                )
            job = rt.enqueue.enqueue(data.id, data.resolution, data.bitrate)
        except QueueError as e:
            raise _http_error(e)
        return dump_video(job)

    @app.get("/api/queue")
    def get_queue(
        request: Request,
        page: int = Query(default=1),
        page_size: int | None = Query(default=None, alias="pageSize"),
        status_filter: str | None = Query(default=None, alias="status"),
    ):
        rt = _runtime(request)
        try:
            result = rt.query.queue_page(page=page, page_size=page_size, status=status_filter)
        except QueueError as e:
            raise _http_error(e)
        return queue_response(result)

    @app.get("/api/queue/stats")
    def queue_stats(request: Request):
        return _runtime(request).query.stats()

    # Ids are relative paths and may contain slashes, hence the :path converters.
    @app.post("/api/videos/{job_id:path}/retry")
    def retry_video(job_id: str, request: Request):
        try:
            job = _runtime(request).enqueue.retry(job_id)
        except QueueError as e:
            raise _http_error(e)
        return dump_video(job)

    @app.patch("/api/videos/{job_id:path}/status")
    def patch_status(job_id: str, data: StatusPatch, request: Request):
        """State-machine checked status update for external workers."""
        rt = _runtime(request)
        try:
            try:
                new_status = VideoStatus(data.status.strip().lower())
            except ValueError:
                raise InvalidRequest(f"Unknown status '{data.status}'", job_id=job_id)

            job = rt.store.get(job_id)
            if new_status == job.status:
                raise InvalidState(
                    f"Job {job_id} is already {new_status.value}", job_id=job_id
                )
            if new_status == VideoStatus.PENDING:
                # Entering pending needs parameters; only a retry can do it here
                job = rt.enqueue.retry(job_id)
            else:
                fields = {"status": new_status}
                expected = job.status
                if new_status == VideoStatus.PROCESSING:
                    # A claim only ever wins against a pending job
                    expected = VideoStatus.PENDING
                    fields.update(
                        worker_id=data.workerId,
                        started_at=utcnow(),
                        heartbeat_at=utcnow(),
                        attempt_count=job.attempt_count + 1,
                    )
                elif new_status in (VideoStatus.COMPLETED, VideoStatus.FAILED):
                    fields.update(finished_at=utcnow(), error=data.error)
                job = rt.store.update(job_id, fields, expected_status=expected)
        except QueueError as e:
            raise _http_error(e)
        return dump_video(job)

    @app.get("/api/videos/{job_id:path}")
    def get_video(job_id: str, request: Request):
        rt = _runtime(request)
        try:
            job = rt.store.get(job_id)
        except QueueError as e:
            raise _http_error(e)
        body = dump_video(job)
        body["attemptCount"] = job.attempt_count
        body["transitions"] = [
            TransitionOut.from_transition(t).model_dump(mode="json")
            for t in rt.store.transitions(job_id)
        ]
        return body

    return app
