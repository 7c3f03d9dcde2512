"""Job processor: drives one job from queued to a terminal state.

Phases and the progress band each one owns:
- download  0 → 10
- transcode 10 → 90 (engine fractions mapped linearly)
- upload    90 → 100

Any exception inside a phase ends the job as failed. Record writes are
retried with exponential backoff on store faults; a completion write that
still fails ends the job as failed. Only a fault while loading or claiming the
job escapes ``process``, and the job is still queued in that case.
"""

import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Optional

from ..errors import ClipExportError, StoreFault
from ..ffmpeg_runner import FfmpegRunner
from ..storage import BlobStore
from .backends import JobRecordStore
from .models import Job, JobStatus

logger = logging.getLogger(__name__)

DOWNLOAD_DONE = 10
TRANSCODE_START = 10
TRANSCODE_END = 90
UPLOAD_START = 90
COMPLETE = 100


def transcode_band(fraction: float) -> int:
    """Map an engine fraction (0.0-1.0) into the transcode band."""
    fraction = max(0.0, min(1.0, fraction))
    return TRANSCODE_START + int(fraction * (TRANSCODE_END - TRANSCODE_START))


def result_key_for(job_id: str, prefix: str = "results") -> str:
    return f"{prefix.rstrip('/')}/{job_id}.mp4"


class ProgressReporter:
    """Best-effort progress writes for one job.

    Drops values that do not increase and coalesces writes closer together
    than ``min_interval_s``. Store faults are logged and ignored so that a
    flaky store never fails a transcode that is otherwise healthy.
    """

    def __init__(
        self,
        store: JobRecordStore,
        job_id: str,
        min_interval_s: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.job_id = job_id
        self.min_interval_s = min_interval_s
        self.clock = clock
        self.last_value = 0
        self._last_write: Optional[float] = None

    def report(self, value: int, force: bool = False) -> None:
        """Write value if it is higher than the last one written.

        Args:
            value: Overall progress percentage
            force: Skip the interval check (phase boundaries)
        """
        if value <= self.last_value:
            return

        now = self.clock()
        if (
            not force
            and self._last_write is not None
            and now - self._last_write < self.min_interval_s
        ):
            return

        try:
            self.store.update(self.job_id, progress=value)
        except StoreFault as e:
            logger.warning("Progress update for %s failed: %s", self.job_id, e)
            return

        self.last_value = value
        self._last_write = now

    def on_transcode_fraction(self, fraction: float) -> None:
        self.report(transcode_band(fraction))


class JobProcessor:
    """Runs one dequeued job through download, transcode and upload."""

    def __init__(
        self,
        store: JobRecordStore,
        blob_store: BlobStore,
        runner: FfmpegRunner,
        temp_dir: Optional[str] = None,
        result_prefix: str = "results",
        progress_min_interval_s: float = 0.5,
        store_retries: int = 3,
        retry_backoff_s: float = 0.1,
    ):
        """
        Args:
            store: Job record store
            blob_store: Source and result storage
            runner: Transcode adapter
            temp_dir: Parent for per-job scratch directories (None = system temp)
            result_prefix: Key prefix for rendered clips
            progress_min_interval_s: Minimum spacing between progress writes
            store_retries: Attempts per record write on StoreFault
            retry_backoff_s: First retry delay, doubled on each attempt
        """
        self.store = store
        self.blob_store = blob_store
        self.runner = runner
        self.temp_dir = temp_dir
        self.result_prefix = result_prefix
        self.progress_min_interval_s = progress_min_interval_s
        self.store_retries = max(1, store_retries)
        self.retry_backoff_s = retry_backoff_s

    def process(self, job_id: str) -> Optional[Job]:
        """Process a dequeued job to completion or failure.

        Returns:
            The terminal record, or None if the job was skipped or the
            failure could not be recorded

        Raises:
            StoreFault: if the record cannot be loaded or claimed
        """
        job = self._with_retry(self.store.get, job_id)
        if job is None:
            logger.warning("Dequeued job %s has no record, skipping", job_id)
            return None
        if job.status != JobStatus.QUEUED:
            logger.warning("Dequeued job %s is %s, skipping", job_id, job.status.value)
            return None

        self._with_retry(self.store.update, job_id, status=JobStatus.PROCESSING, progress=0)
        logger.info(
            "Processing job %s: %s [%.2fs +%.2fs] -> %s%s",
            job_id,
            job.source_key,
            job.start_time,
            job.duration,
            job.size.value,
            " (no audio)" if job.remove_audio else "",
        )

        started = time.monotonic()
        try:
            result_key = self._run_phases(job)
        except Exception as e:
            return self._fail(job_id, e)

        try:
            completed = self._with_retry(
                self.store.update,
                job_id,
                status=JobStatus.COMPLETED,
                progress=COMPLETE,
                result_key=result_key,
            )
        except StoreFault as e:
            return self._fail(job_id, e)
        logger.info(
            "Job %s completed in %.1fs -> %s", job_id, time.monotonic() - started, result_key
        )
        return completed

    def _run_phases(self, job: Job) -> str:
        reporter = ProgressReporter(self.store, job.id, self.progress_min_interval_s)
        width, height = job.size.dimensions
        result_key = result_key_for(job.id, self.result_prefix)

        if self.temp_dir:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f"{job.id}-", dir=self.temp_dir) as work_dir:
            input_path = Path(work_dir) / f"{job.id}-input.mp4"
            output_path = Path(work_dir) / f"{job.id}-output.mp4"

            self.blob_store.download(job.source_key, str(input_path))
            reporter.report(DOWNLOAD_DONE, force=True)

            self.runner.transcode_clip(
                source_path=str(input_path),
                dest_path=str(output_path),
                start_time=job.start_time,
                duration=job.duration,
                width=width,
                height=height,
                remove_audio=job.remove_audio,
                progress_callback=reporter.on_transcode_fraction,
            )
            reporter.report(UPLOAD_START, force=True)

            self.blob_store.upload(str(output_path), result_key)

        return result_key

    def _fail(self, job_id: str, exc: Exception) -> Optional[Job]:
        message = str(exc).strip() or type(exc).__name__
        if isinstance(exc, ClipExportError):
            logger.error("Job %s failed: %s", job_id, message)
        else:
            logger.exception("Job %s failed with unexpected error", job_id)

        try:
            return self._with_retry(
                self.store.update, job_id, status=JobStatus.FAILED, error=message
            )
        except ClipExportError as e:
            logger.error("Could not record failure of job %s: %s", job_id, e)
            return None

    def _with_retry(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Call a store operation, retrying StoreFault with exponential backoff.

        Backoff: retry_backoff_s, then doubled per attempt.
        """
        for attempt in range(self.store_retries):
            try:
                return fn(*args, **kwargs)
            except StoreFault as e:
                if attempt == self.store_retries - 1:
                    raise
                delay = self.retry_backoff_s * (2 ** attempt)
                logger.warning("Job store unavailable (%s), retrying in %.2fs", e, delay)
                time.sleep(delay)
