"""Tests for the submission and status boundaries."""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from clip_export.errors import JobNotFoundError, QueueFault
from clip_export.jobs.models import JobStatus
from clip_export.jobs.submission import get_job_view, submit_job

SCENARIO_A = {
    "sourceKey": "uploads/a.mp4",
    "startTime": 2,
    "duration": 4,
    "size": "850x480",
    "removeAudio": True,
}


class TestSubmitJob:
    def test_creates_and_queues(self, store, queue):
        job = submit_job(store, queue, SCENARIO_A)

        assert len(job.id) == 32
        assert store.get(job.id).status == JobStatus.QUEUED
        assert queue.dequeue() == job.id

    def test_ids_are_unique(self, store, queue):
        ids = {submit_job(store, queue, SCENARIO_A).id for _ in range(5)}
        assert len(ids) == 5

    def test_invalid_payload_creates_nothing(self, store, queue):
        with pytest.raises(ValidationError):
            submit_job(store, queue, {**SCENARIO_A, "duration": 10})
        assert queue.depth() == 0

    def test_enqueue_failure_marks_job_failed(self, store):
        broken_queue = MagicMock()
        broken_queue.enqueue.side_effect = QueueFault("redis down")
        created = []
        original_create = store.create

        def create(job):
            created.append(job.id)
            original_create(job)

        store.create = create

        with pytest.raises(QueueFault):
            submit_job(store, broken_queue, SCENARIO_A)

        job = store.get(created[0])
        assert job.status == JobStatus.FAILED
        assert "redis down" in job.error


class TestGetJobView:
    def test_queued_view(self, store, queue, blob_store):
        job = submit_job(store, queue, SCENARIO_A)
        view = get_job_view(store, blob_store, job.id)

        assert view["id"] == job.id
        assert view["status"] == "queued"
        assert view["progress"] == 0
        assert "resultUrl" not in view

    def test_completed_view_has_result_url(self, store, queue, blob_store):
        job = submit_job(store, queue, SCENARIO_A)
        store.update(job.id, status=JobStatus.PROCESSING)
        store.update(
            job.id, status=JobStatus.COMPLETED, progress=100, result_key=f"results/{job.id}.mp4"
        )

        view = get_job_view(store, blob_store, job.id)

        assert view["resultKey"] == f"results/{job.id}.mp4"
        assert view["resultUrl"] == f"/storage/download?key=results%2F{job.id}.mp4"

    def test_not_found(self, store, blob_store):
        with pytest.raises(JobNotFoundError):
            get_job_view(store, blob_store, "missing")
