"""Job records, work queue, processor and worker loop."""

from .backends import JobQueue, JobRecordStore
from .factory import build_backends
from .models import ExportSize, Job, JobRequest, JobStatus, QueueEntry
from .processor import JobProcessor, ProgressReporter
from .sqlite_backend import SQLiteJobQueue, SQLiteJobStore
from .submission import get_job_view, submit_job
from .worker import Worker

__all__ = [
    "JobQueue",
    "JobRecordStore",
    "build_backends",
    "ExportSize",
    "Job",
    "JobRequest",
    "JobStatus",
    "QueueEntry",
    "JobProcessor",
    "ProgressReporter",
    "SQLiteJobQueue",
    "SQLiteJobStore",
    "get_job_view",
    "submit_job",
    "Worker",
]
