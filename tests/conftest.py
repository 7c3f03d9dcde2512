import tempfile
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from clip_export.api.main import create_app
from clip_export.errors import StoreFault
from clip_export.jobs.processor import JobProcessor
from clip_export.jobs.sqlite_backend import SQLiteJobQueue, SQLiteJobStore
from clip_export.models import ClipExportConfig
from clip_export.storage import LocalBlobStore


class FakeRunner:
    """Stands in for FfmpegRunner: writes the output file and reports progress."""

    def __init__(self, fractions=(0.25, 0.5, 1.0), error=None):
        self.fractions = fractions
        self.error = error
        self.calls = []

    def transcode_clip(
        self,
        source_path,
        dest_path,
        start_time,
        duration,
        width,
        height,
        remove_audio,
        progress_callback=None,
    ):
        self.calls.append(
            {
                "source_path": source_path,
                "dest_path": dest_path,
                "start_time": start_time,
                "duration": duration,
                "width": width,
                "height": height,
                "remove_audio": remove_audio,
            }
        )
        for fraction in self.fractions:
            if progress_callback:
                progress_callback(fraction)
        if self.error is not None:
            raise self.error
        Path(dest_path).write_bytes(b"rendered " + Path(source_path).read_bytes())
        return None


class FlakyStore:
    """Wraps a job store; status updates matching `status` raise StoreFault `failures` times."""

    def __init__(self, inner, status, failures=1):
        self.inner = inner
        self.status = status
        self.failures = failures

    def get(self, job_id):
        return self.inner.get(job_id)

    def create(self, job):
        return self.inner.create(job)

    def update(self, job_id, **fields):
        if self.failures > 0 and fields.get("status") == self.status:
            self.failures -= 1
            raise StoreFault("database is locked")
        return self.inner.update(job_id, **fields)


@pytest.fixture
def tmp_dir():
    """Temporary working directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(tmp_dir):
    """SQLite job store on a fresh database."""
    job_store = SQLiteJobStore(str(tmp_dir / "queue.db"))
    yield job_store
    job_store.close()


@pytest.fixture
def queue(store):
    """SQLite queue sharing the store's database."""
    return SQLiteJobQueue(store)


@pytest.fixture
def blob_store(tmp_dir):
    """Local blob store rooted in the temp dir."""
    return LocalBlobStore(str(tmp_dir / "blobs"))


@pytest.fixture
def source_key(blob_store, tmp_dir):
    """An uploaded source video."""
    src = tmp_dir / "source.mp4"
    src.write_bytes(b"fake video bytes" * 64)
    blob_store.upload(str(src), "uploads/a.mp4")
    return "uploads/a.mp4"


@pytest.fixture
def runner_factory():
    return FakeRunner


@pytest.fixture
def flaky_store_factory():
    return FlakyStore


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def processor(store, blob_store, fake_runner, tmp_dir):
    """Processor wired to the fake runner with progress coalescing disabled."""
    return JobProcessor(
        store,
        blob_store,
        fake_runner,
        temp_dir=str(tmp_dir / "work"),
        progress_min_interval_s=0.0,
    )


@pytest.fixture
def app_config(tmp_dir):
    return ClipExportConfig.from_dict(
        {
            "queue": {"db_path": str(tmp_dir / "api.db")},
            "storage": {"local_path": str(tmp_dir / "blobs")},
        }
    )


@pytest.fixture
def app(app_config, store, queue, blob_store):
    return create_app(app_config, store=store, queue=queue, blob_store=blob_store)


@pytest.fixture(scope="function")
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
