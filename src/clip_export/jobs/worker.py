"""Worker loop: poll the queue, hand each job to the processor.

One job at a time per process; scale out by running more workers against
the same SQLite file or Redis server.
"""

import logging
import os
import signal
import threading
from typing import Optional

from ..errors import QueueFault, StoreFault
from .backends import JobQueue
from .processor import JobProcessor

logger = logging.getLogger(__name__)

MIN_INTERVAL_S = 0.1
MAX_INTERVAL_S = 60.0


def _bounded(value: float) -> float:
    return max(MIN_INTERVAL_S, min(MAX_INTERVAL_S, float(value)))


class Worker:
    """Sequential polling worker.

    Example:
        >>> worker = Worker(queue, processor, poll_interval_s=5.0)
        >>> worker.install_signal_handlers()
        >>> worker.run()
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        poll_interval_s: float = 5.0,
        error_backoff_s: float = 5.0,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.poll_interval_s = _bounded(poll_interval_s)
        self.error_backoff_s = _bounded(error_backoff_s)
        self.worker_id = worker_id or f"worker-{os.getpid()}"
        self.jobs_processed = 0
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Request a stop; the current job still finishes."""
        self._stop.set()

    def run_once(self) -> bool:
        """Poll once and process at most one job.

        Returns:
            True if a job was dequeued and handed to the processor
        """
        try:
            job_id = self.queue.dequeue()
        except QueueFault as e:
            logger.error("[%s] Queue unavailable: %s", self.worker_id, e)
            self._stop.wait(self.error_backoff_s)
            return False

        if job_id is None:
            return False

        logger.debug("[%s] Dequeued %s", self.worker_id, job_id)
        try:
            self.processor.process(job_id)
        except StoreFault as e:
            logger.error("[%s] Store unavailable while handling %s: %s", self.worker_id, job_id, e)
            self._requeue(job_id)
            self._stop.wait(self.error_backoff_s)
        except Exception:
            logger.exception("[%s] Unexpected error handling %s", self.worker_id, job_id)

        self.jobs_processed += 1
        return True

    def run(self, max_jobs: Optional[int] = None, drain: bool = False) -> int:
        """Loop until stopped.

        Args:
            max_jobs: Stop after this many jobs (None = unlimited)
            drain: Stop the first time the queue is observed empty

        Returns:
            Number of jobs processed
        """
        logger.info(
            "[%s] Worker started (poll every %.1fs)", self.worker_id, self.poll_interval_s
        )
        processed = 0

        while not self._stop.is_set():
            if max_jobs is not None and processed >= max_jobs:
                break

            if self.run_once():
                processed += 1
                continue

            if drain and self._queue_is_empty():
                logger.info("[%s] Queue drained", self.worker_id)
                break

            self._stop.wait(self.poll_interval_s)

        logger.info("[%s] Worker stopped after %d job(s)", self.worker_id, processed)
        return processed

    def _requeue(self, job_id: str) -> None:
        """Put a job back on the queue after its record could not be claimed."""
        try:
            self.queue.enqueue(job_id)
        except QueueFault as e:
            logger.error("[%s] Could not requeue %s: %s", self.worker_id, job_id, e)
        else:
            logger.info("[%s] Requeued %s", self.worker_id, job_id)

    def _queue_is_empty(self) -> bool:
        try:
            return self.queue.depth() == 0
        except QueueFault:
            return False

    def install_signal_handlers(self) -> None:
        """Stop gracefully on SIGINT/SIGTERM (main thread only)."""

        def _handle(signum, frame):
            logger.info("[%s] Received signal %d, stopping after current job", self.worker_id, signum)
            self.stop()

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)
