"""Exception taxonomy for the clip export pipeline.

Errors fall into three groups:
- Record errors (JobNotFoundError, DuplicateJobError, JobStateError) are
  raised by the job record store and surfaced to callers unchanged.
- Processing errors (EngineFailure, EngineNotFound, StorageError) are raised
  while a job is being worked and end up in the job's ``error`` field.
- Infrastructure faults (StoreFault, QueueFault) mean the persistence layer is
  unavailable; the worker loop treats them as transient.
"""

from typing import Optional


class ClipExportError(Exception):
    """Base class for all clip export errors."""


class JobNotFoundError(ClipExportError):
    """Referenced job id does not exist in the record store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class DuplicateJobError(ClipExportError):
    """A job with the same id already exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job already exists: {job_id}")


class JobStateError(ClipExportError):
    """Update rejected: write-once field or terminal record."""


class StoreFault(ClipExportError):
    """Job record store persistence is unavailable."""


class QueueFault(ClipExportError):
    """Work queue persistence is unavailable."""


class StorageError(ClipExportError):
    """Blob store download or upload failed."""


class EngineNotFound(ClipExportError):
    """The ffmpeg binary could not be resolved or executed."""


class EngineFailure(ClipExportError):
    """ffmpeg exited unsuccessfully or produced no output file."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        diagnostic_output: str = "",
        error_type: Optional[str] = None,
    ):
        self.exit_code = exit_code
        self.diagnostic_output = diagnostic_output
        self.error_type = error_type

        text = message
        if diagnostic_output:
            text = f"{message}\n{diagnostic_output.strip()}"
        super().__init__(text)
