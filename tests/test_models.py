"""Tests for job models, request validation and config models."""

import pytest
from pydantic import ValidationError

from clip_export.errors import JobStateError
from clip_export.jobs.models import (
    ExportSize,
    Job,
    JobRequest,
    JobStatus,
    QueueEntry,
    validate_update_fields,
)
from clip_export.models import ClipExportConfig, TranscodeConfig, WorkerConfig

VALID_REQUEST = {
    "sourceKey": "uploads/a.mp4",
    "startTime": 2,
    "duration": 4,
    "size": "850x480",
    "removeAudio": True,
}


class TestJobRequest:
    """Test clip request validation."""

    def test_valid_request(self):
        request = JobRequest.model_validate(VALID_REQUEST)
        assert request.source_key == "uploads/a.mp4"
        assert request.size == ExportSize.MEDIUM
        assert request.remove_audio is True

    def test_snake_case_accepted(self):
        request = JobRequest(
            source_key="uploads/a.mp4", start_time=0, duration=3, size="630x354", remove_audio=False
        )
        assert request.size.dimensions == (630, 354)

    @pytest.mark.parametrize("duration", [2.9, 6.1, -1])
    def test_duration_out_of_range(self, duration):
        with pytest.raises(ValidationError):
            JobRequest.model_validate({**VALID_REQUEST, "duration": duration})

    @pytest.mark.parametrize("duration", [3, 6])
    def test_duration_bounds_inclusive(self, duration):
        assert JobRequest.model_validate({**VALID_REQUEST, "duration": duration}).duration == duration

    def test_negative_start_rejected(self):
        with pytest.raises(ValidationError):
            JobRequest.model_validate({**VALID_REQUEST, "startTime": -0.5})

    def test_unknown_size_rejected(self):
        with pytest.raises(ValidationError):
            JobRequest.model_validate({**VALID_REQUEST, "size": "1280x720"})

    def test_empty_source_key_rejected(self):
        with pytest.raises(ValidationError):
            JobRequest.model_validate({**VALID_REQUEST, "sourceKey": ""})

    def test_missing_remove_audio_rejected(self):
        payload = dict(VALID_REQUEST)
        del payload["removeAudio"]
        with pytest.raises(ValidationError):
            JobRequest.model_validate(payload)

    def test_to_job_initial_state(self):
        job = JobRequest.model_validate(VALID_REQUEST).to_job("abc")
        assert job.id == "abc"
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.result_key is None
        assert job.error is None
        assert job.created_at == job.updated_at


class TestJob:
    """Test job serialization."""

    def test_to_api_uses_camel_case(self):
        job = JobRequest.model_validate(VALID_REQUEST).to_job("abc")
        data = job.to_api()

        assert data["sourceKey"] == "uploads/a.mp4"
        assert data["removeAudio"] is True
        assert data["status"] == "queued"
        assert data["size"] == "850x480"
        assert "resultKey" in data
        assert isinstance(data["createdAt"], str)

    def test_json_round_trip(self):
        job = JobRequest.model_validate(VALID_REQUEST).to_job("abc")
        restored = Job.model_validate_json(job.model_dump_json(by_alias=True))
        assert restored == job

    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.QUEUED.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    def test_queue_entry_defaults(self):
        entry = QueueEntry(job_id="abc")
        assert entry.enqueued_at is not None


class TestUpdateValidation:
    """Test the write-once rules applied to partial updates."""

    def test_status_normalized(self):
        assert validate_update_fields({"status": JobStatus.FAILED}) == {"status": "failed"}

    def test_empty_update_rejected(self):
        with pytest.raises(ValueError):
            validate_update_fields({})

    @pytest.mark.parametrize("field", ["id", "source_key", "duration", "size", "created_at"])
    def test_write_once_fields(self, field):
        with pytest.raises(JobStateError):
            validate_update_fields({field: "x"})

    def test_invalid_status(self):
        with pytest.raises(ValueError):
            validate_update_fields({"status": "paused"})


class TestConfigModels:
    """Test configuration model defaults and bounds."""

    def test_defaults(self):
        config = ClipExportConfig()
        assert config.queue.backend == "sqlite"
        assert config.storage.backend == "local"
        assert config.transcode.crf == 23
        assert config.transcode.preset == "medium"
        assert config.worker.poll_interval_s == 5.0
        assert config.api.client_poll_interval_s == 1.0

    def test_poll_interval_bounds(self):
        with pytest.raises(ValidationError):
            WorkerConfig(poll_interval_s=0.01)
        with pytest.raises(ValidationError):
            WorkerConfig(poll_interval_s=120)

    def test_crf_bounds(self):
        with pytest.raises(ValidationError):
            TranscodeConfig(crf=60)

    def test_public_dump_drops_secrets(self):
        config = ClipExportConfig.from_dict(
            {"storage": {"access_key": "AKIA", "secret_key": "shh"}}
        )
        dumped = config.public_dump()
        assert "access_key" not in dumped["storage"]
        assert "secret_key" not in dumped["storage"]
        assert config.storage.secret_key == "shh"
