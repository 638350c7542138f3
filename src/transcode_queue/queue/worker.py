"""Worker pool that executes claimed transcoding jobs.

This module provides parallel job execution with:
- A fixed pool of worker threads (the dispatcher enforces the budget)
- Transcoder calls on their own thread with an enforced timeout
- Heartbeat threads for long-running jobs
- A janitor thread that reclaims jobs of dead workers
- Graceful shutdown handling

The store is only touched around the state transitions at the start and end
of a job; no store lock is held while pixels are being converted.
"""

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from .backends import JobStore, Transcoder
from .dispatcher import Dispatcher
from .errors import EncodeFailure, StoreConflict, TranscodeTimeout
from .models import TranscodeOutput, TranscodeRequest, VideoJob, VideoStatus, utcnow

logger = logging.getLogger(__name__)


class JobWorkerPool:
    """Thread-based worker pool for transcoding jobs.

    Features:
    - ``n_workers`` long-lived worker threads pulling from the dispatcher
    - Per-job timeout; the transcoder is signalled to cancel on expiry
    - Context manager for graceful shutdown
    - Failures are recorded on the job and never stop the pool
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: Dispatcher,
        transcoder: Transcoder,
        videos_root: str,
        n_workers: Optional[int] = None,
        job_timeout_s: float = 3600.0,
        cancel_grace_s: float = 10.0,
        heartbeat_interval_s: float = 30.0,
        stale_after_s: Optional[float] = None,
    ):
        """Initialize worker pool.

        Args:
            store: Shared job store
            dispatcher: Dispatcher handing out claimed jobs
            transcoder: Engine invoked per job
            videos_root: Directory job paths are relative to
            n_workers: Number of worker threads (default: dispatcher budget)
            job_timeout_s: Maximum wall time for one transcode
            cancel_grace_s: How long to wait for a cancelled transcode to stop
            heartbeat_interval_s: Seconds between heartbeats of a running job
            stale_after_s: Reclaim processing jobs silent for this long
                (None disables the janitor)
        """
        self.store = store
        self.dispatcher = dispatcher
        self.transcoder = transcoder
        self.videos_root = Path(videos_root)
        self.n_workers = n_workers or dispatcher.worker_budget
        self.job_timeout_s = job_timeout_s
        self.cancel_grace_s = cancel_grace_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stale_after_s = stale_after_s

        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []
        self._active = 0
        self._active_lock = threading.Lock()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    @property
    def active(self) -> int:
        """Number of jobs currently being transcoded by this pool."""
        with self._active_lock:
            return self._active

    @property
    def running(self) -> bool:
        return self._executor is not None

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()

        if self.stale_after_s:
            # Crash recovery on startup, then periodically
            self.dispatcher.reclaim_stale(self.stale_after_s)

        extra = 1 if self.stale_after_s else 0
        self._executor = ThreadPoolExecutor(
            max_workers=self.n_workers + extra, thread_name_prefix="transcode-worker"
        )
        for i in range(self.n_workers):
            worker_id = f"worker-{os.getpid()}-{i}"
            self._futures.append(self._executor.submit(self._worker_loop, worker_id))
        if self.stale_after_s:
            self._futures.append(self._executor.submit(self._janitor_loop))
        logger.info("Started %d workers", self.n_workers)

    def stop(self, wait: bool = True) -> None:
        """Graceful shutdown.

        Args:
            wait: If True, wait for in-flight jobs to finish
        """
        if self._executor is None:
            return
        self._stop.set()
        self.dispatcher.wake_all()
        self._executor.shutdown(wait=wait)
        self._executor = None
        self._futures = []
        logger.info("Worker pool stopped")

    def run_until_idle(self, poll_interval_s: float = 0.2, show_progress: bool = False) -> dict:
        """Start the pool, process until nothing is pending or in flight, then stop.

        Returns:
            Dict with ``completed`` and ``failed`` counts for this run
        """
        before = self.store.counts()
        total = before[VideoStatus.PENDING] + before[VideoStatus.PROCESSING]
        self.start()
        try:
            with tqdm(
                total=total, desc="Transcoding", unit="job", disable=not show_progress
            ) as pbar:
                while True:
                    time.sleep(poll_interval_s)
                    # Read counts before in_flight: a worker takes its slot before claiming
                    counts = self.store.counts()
                    finished = sum(
                        counts[s] - before[s] for s in (VideoStatus.COMPLETED, VideoStatus.FAILED)
                    )
                    if finished > pbar.n:
                        pbar.update(finished - pbar.n)
                    if counts[VideoStatus.PENDING] == 0 and self.dispatcher.in_flight == 0:
                        break
        finally:
            self.stop()

        after = self.store.counts()
        return {
            "completed": after[VideoStatus.COMPLETED] - before[VideoStatus.COMPLETED],
            "failed": after[VideoStatus.FAILED] - before[VideoStatus.FAILED],
        }

    def _worker_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.dispatcher.next_job(worker_id, self._stop)
            except Exception:
                logger.exception("Dispatch failed for %s; backing off", worker_id)
                self._stop.wait(self.dispatcher.poll_interval_s)
                continue
            if job is None:
                continue
            with self._active_lock:
                self._active += 1
            try:
                self.process_job(job, worker_id)
            except Exception:
                # Store failures while acknowledging; the janitor will reclaim the job
                logger.exception("Worker %s crashed on job %s", worker_id, job.id)
            finally:
                with self._active_lock:
                    self._active -= 1
                self.dispatcher.release()

    def _janitor_loop(self) -> None:
        interval = max(self.stale_after_s / 2, 1.0)
        while not self._stop.wait(interval):
            try:
                self.dispatcher.reclaim_stale(self.stale_after_s)
            except Exception:
                logger.exception("Stale job reclaim failed")

    def process_job(self, job: VideoJob, worker_id: str) -> VideoJob:
        """Transcode one claimed job and record the outcome.

        Args:
            job: Job in ``processing`` status claimed for ``worker_id``
            worker_id: Worker identifier (used for heartbeats and logs)

        Returns:
            The job after its final transition

        Error handling:
        - EncodeFailure / TranscodeTimeout: job marked failed with the reason
        - Missing source file: job marked failed
        - Any other transcoder exception: job marked failed
        - Lost the final CAS (job reclaimed meanwhile): result discarded
        """
        start_time = time.time()
        heartbeat = _start_heartbeat(self.store, job.id, self.heartbeat_interval_s)

        try:
            source = self.videos_root / job.path
            if not source.is_file():
                raise EncodeFailure(f"Source file not found: {job.path}", job_id=job.id)

            request = TranscodeRequest(
                job_id=job.id,
                path=job.path,
                source_path=str(source),
                resolution=job.resolution,
                bitrate=job.bitrate,
            )
            output = self._run_transcoder(request)

        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"[:500]
            logger.warning("Job %s failed on %s: %s", job.id, worker_id, error_msg)
            return self._ack(
                job,
                {
                    "status": VideoStatus.FAILED,
                    "finished_at": utcnow(),
                    "duration_s": time.time() - start_time,
                    "error": error_msg,
                },
            )

        finally:
            _stop_heartbeat(heartbeat)

        logger.info("Job %s completed in %.1fs", job.id, time.time() - start_time)
        return self._ack(
            job,
            {
                "status": VideoStatus.COMPLETED,
                "finished_at": utcnow(),
                "duration_s": output.duration_s or time.time() - start_time,
                "output_path": output.output_path,
                "output_size": output.output_size,
                "error": None,
            },
        )

    def _ack(self, job: VideoJob, fields: dict) -> VideoJob:
        try:
            return self.store.update(job.id, fields, expected_status=VideoStatus.PROCESSING)
        except StoreConflict:
            logger.warning("Job %s was reclaimed before it finished; result discarded", job.id)
            return self.store.get(job.id)

    def _run_transcoder(self, request: TranscodeRequest) -> TranscodeOutput:
        """Invoke the transcoder on its own thread and enforce the timeout."""
        cancel = threading.Event()
        outcome = {}

        def target():
            try:
                outcome["output"] = self.transcoder.transcode(request, cancel)
            except BaseException as e:  # re-raised on the worker thread
                outcome["error"] = e

        thread = threading.Thread(target=target, name=f"transcode-{request.job_id}", daemon=True)
        thread.start()
        thread.join(self.job_timeout_s)

        if thread.is_alive():
            cancel.set()
            thread.join(self.cancel_grace_s)
            raise TranscodeTimeout(
                f"Transcode exceeded {self.job_timeout_s:g}s", job_id=request.job_id
            )
        if "error" in outcome:
            raise outcome["error"]
        return outcome["output"]


def _start_heartbeat(store: JobStore, job_id: str, interval_s: float):
    """Start background thread to refresh ``heartbeat_at`` while a job runs.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Heartbeat prevents long-running jobs from being reclaimed as stale.
    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        try:
            while not stop_event.wait(interval_s):
                try:
                    store.update(
                        job_id, {"heartbeat_at": utcnow()}, expected_status=VideoStatus.PROCESSING
                    )
                except StoreConflict:
                    # Job left processing (reclaimed); nothing left to keep alive
                    return
                except Exception:
                    # Log but don't crash thread
                    logger.exception("Heartbeat failed for %s", job_id)
        finally:
            # One heartbeat thread per job; its store connection must not outlive it
            store.release_thread()

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
    thread.start()

    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    """Signal the heartbeat thread to stop and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
