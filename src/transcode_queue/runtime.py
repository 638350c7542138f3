"""Wiring: build the store and services from a QueueConfig.

Every service receives the store by reference; nothing here is a module-level
singleton, so tests can build as many independent runtimes as they like.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .models import QueueConfig
from .queue.backends import JobStore, Transcoder
from .queue.dispatcher import Dispatcher
from .queue.enqueue import EnqueueService
from .queue.memory_backend import InMemoryJobStore
from .queue.query import QueryService
from .queue.sqlite_backend import SQLiteJobStore
from .queue.worker import JobWorkerPool
from .transcoder import FfmpegTranscoder

logger = logging.getLogger(__name__)


def build_store(config: QueueConfig) -> JobStore:
    if config.storage.backend == "memory":
        logger.info("Using in-memory job store (state is lost on exit)")
        return InMemoryJobStore()
    Path(config.storage.db_path).parent.mkdir(parents=True, exist_ok=True)
    logger.info("Using SQLite job store at %s", config.storage.db_path)
    return SQLiteJobStore(config.storage.db_path, busy_timeout_s=config.storage.busy_timeout_s)


@dataclass
class QueueRuntime:
    config: QueueConfig
    store: JobStore
    enqueue: EnqueueService
    dispatcher: Dispatcher
    query: QueryService
    transcoder: Transcoder

    def worker_pool(self) -> JobWorkerPool:
        w = self.config.workers
        return JobWorkerPool(
            self.store,
            self.dispatcher,
            self.transcoder,
            videos_root=self.config.videos.root,
            n_workers=w.count,
            job_timeout_s=w.job_timeout_s,
            cancel_grace_s=w.cancel_grace_s,
            heartbeat_interval_s=w.heartbeat_interval_s,
            stale_after_s=w.stale_after_s,
        )

    def close(self) -> None:
        self.store.close()


def build_runtime(
    config: QueueConfig,
    store: Optional[JobStore] = None,
    transcoder: Optional[Transcoder] = None,
) -> QueueRuntime:
    """Assemble store, enqueue, dispatcher and query services for ``config``."""
    store = store or build_store(config)
    wakeup = threading.Condition()
    if transcoder is None:
        transcoder = FfmpegTranscoder(
            config.videos.output_dir,
            config=config.ffmpeg,
            job_timeout_s=config.workers.job_timeout_s,
        )
    return QueueRuntime(
        config=config,
        store=store,
        enqueue=EnqueueService(store, notify=wakeup),
        dispatcher=Dispatcher(
            store,
            worker_budget=config.workers.count,
            poll_interval_s=config.workers.poll_interval_s,
            wakeup=wakeup,
        ),
        query=QueryService(
            store,
            default_page_size=config.api.default_page_size,
            max_page_size=config.api.max_page_size,
        ),
        transcoder=transcoder,
    )
