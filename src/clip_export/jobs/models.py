"""Pydantic models for job records and queue entries.

JSON field names are camelCase (``sourceKey``, ``removeAudio``...) to match
what browser clients send and poll; Python attributes stay snake_case.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import JobStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        queued → processing        (worker dequeues and loads the record)
        processing → completed     (download, transcode and upload succeed)
        processing → failed        (any phase raises)

    completed and failed are terminal.
    """

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class ExportSize(str, Enum):
    """Fixed set of output resolutions (WIDTHxHEIGHT)."""

    SMALL = "630x354"
    MEDIUM = "850x480"
    FULL_HD = "1920x1080"

    @property
    def dimensions(self) -> Tuple[int, int]:
        width, height = self.value.split("x")
        return int(width), int(height)


# Fields the processor may change after creation.
MUTABLE_FIELDS = frozenset({"status", "progress", "result_key", "error"})

# Fields fixed at creation time.
IMMUTABLE_FIELDS = frozenset(
    {"id", "source_key", "start_time", "duration", "size", "remove_audio", "created_at"}
)


def validate_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Check a partial update against the write-once rules.

    Returns:
        Normalized values (status as its string value, progress as int)

    Raises:
        JobStateError: if a write-once field is named
        ValueError: for unknown fields or out-of-range progress
    """
    if not fields:
        raise ValueError("update needs at least one field")

    immutable = set(fields) & IMMUTABLE_FIELDS
    if immutable:
        raise JobStateError(f"Write-once fields cannot be updated: {sorted(immutable)}")

    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")

    values = dict(fields)
    if "status" in values:
        values["status"] = JobStatus(values["status"]).value
    if "progress" in values:
        progress = int(values["progress"])
        if not 0 <= progress <= 100:
            raise ValueError(f"progress out of range: {progress}")
        values["progress"] = progress
    return values


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobRequest(_CamelModel):
    """Validated clip request accepted by the submission boundary."""

    source_key: str = Field(..., min_length=1, description="Blob key of the uploaded source")
    start_time: float = Field(..., ge=0.0, description="Trim start in seconds")
    duration: float = Field(..., ge=3.0, le=6.0, description="Trim length in seconds")
    size: ExportSize = Field(..., description="Output resolution")
    remove_audio: bool = Field(..., description="Drop the audio stream from the output")

    def to_job(self, job_id: str, now: Optional[datetime] = None) -> "Job":
        now = now or utcnow()
        return Job(
            id=job_id,
            status=JobStatus.QUEUED,
            progress=0,
            source_key=self.source_key,
            start_time=self.start_time,
            duration=self.duration,
            size=self.size,
            remove_audio=self.remove_audio,
            created_at=now,
            updated_at=now,
        )


class Job(_CamelModel):
    """One clip export request and its lifecycle record."""

    id: str = Field(..., description="Unique job identifier")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Current job state")
    progress: int = Field(default=0, ge=0, le=100, description="Overall progress percentage")
    source_key: str = Field(..., description="Blob key of the uploaded source")
    start_time: float = Field(..., ge=0.0, description="Trim start in seconds")
    duration: float = Field(..., gt=0.0, description="Trim length in seconds")
    size: ExportSize = Field(..., description="Output resolution")
    remove_audio: bool = Field(default=False, description="Drop the audio stream")
    result_key: Optional[str] = Field(default=None, description="Blob key of the rendered clip")
    error: Optional[str] = Field(default=None, description="Failure cause")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    updated_at: datetime = Field(default_factory=utcnow, description="Last mutation time")

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    def to_api(self) -> dict:
        """Serialize with camelCase keys and ISO timestamps."""
        return self.model_dump(mode="json", by_alias=True)


class QueueEntry(_CamelModel):
    """FIFO pointer to a job awaiting processing."""

    job_id: str
    enqueued_at: datetime = Field(default_factory=utcnow)
