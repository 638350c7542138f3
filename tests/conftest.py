import threading
import time
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from transcode_queue.api.main import create_app
from transcode_queue.models import QueueConfig
from transcode_queue.queue import (
    EncodeFailure,
    InMemoryJobStore,
    SQLiteJobStore,
    TranscodeOutput,
    Transcoder,
    VideoJob,
)


class FakeTranscoder(Transcoder):
    """Records every request; fails jobs whose path is in ``fail_paths``."""

    def __init__(self, fail_paths=(), delay_s: float = 0.0):
        self.fail_paths = set(fail_paths)
        self.delay_s = delay_s
        self.calls = []
        self._lock = threading.Lock()

    def transcode(self, request, cancel):
        with self._lock:
            self.calls.append(request.job_id)
        if self.delay_s:
            cancel.wait(self.delay_s)
        if request.path in self.fail_paths:
            raise EncodeFailure("encoder exploded", job_id=request.job_id)
        return TranscodeOutput(
            output_path=f"out/{request.path}", output_size=42, duration_s=0.01
        )


class HangingTranscoder(Transcoder):
    """Blocks until cancelled; records whether the cancel event was seen."""

    def __init__(self):
        self.cancelled = threading.Event()

    def transcode(self, request, cancel):
        while not cancel.wait(0.01):
            pass
        self.cancelled.set()
        raise EncodeFailure("cancelled", job_id=request.job_id)


@pytest.fixture
def memory_store():
    return InMemoryJobStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SQLiteJobStore(str(tmp_path / "queue.db"))
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every store-level test runs against both backends."""
    if request.param == "memory":
        yield InMemoryJobStore()
    else:
        s = SQLiteJobStore(str(tmp_path / "queue.db"))
        yield s
        s.close()


@pytest.fixture
def videos_dir(tmp_path):
    root = tmp_path / "videos"
    root.mkdir()
    return root


def make_video(root: Path, rel: str, size: int = 1024) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * size)
    return path


def add_job(store, job_id: str, size: int = 1024) -> VideoJob:
    return store.create(VideoJob(id=job_id, path=job_id, original_size=size))


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def fake_transcoder():
    return FakeTranscoder()


@pytest.fixture
def api_config(tmp_path, videos_dir):
    return QueueConfig.from_dict(
        {
            "storage": {"backend": "memory"},
            "videos": {"root": str(videos_dir), "output_dir": str(tmp_path / "output")},
            "workers": {"enabled": False},
        }
    )


@pytest.fixture
def app(api_config, memory_store, fake_transcoder):
    return create_app(api_config, store=memory_store, transcoder=fake_transcoder)


@pytest.fixture(scope="function")
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
