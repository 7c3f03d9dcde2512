"""Submission and status boundaries shared by the API and the CLI."""

import logging
import uuid
from typing import Any, Dict, Union

from ..errors import ClipExportError, JobNotFoundError, QueueFault
from ..storage import BlobStore
from .backends import JobQueue, JobRecordStore
from .models import Job, JobRequest, JobStatus

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    return uuid.uuid4().hex


def submit_job(
    store: JobRecordStore,
    queue: JobQueue,
    payload: Union[JobRequest, Dict[str, Any]],
) -> Job:
    """Validate a clip request, record it and queue it.

    Args:
        store: Job record store
        queue: Work queue
        payload: JobRequest or a camelCase/snake_case dict

    Returns:
        The created job (status=queued, progress=0)

    Raises:
        pydantic.ValidationError: if the payload is invalid (nothing is created)
        StoreFault: if the record cannot be created
        QueueFault: if the job cannot be queued (the record is marked failed)
    """
    request = payload if isinstance(payload, JobRequest) else JobRequest.model_validate(payload)
    job = request.to_job(new_job_id())

    store.create(job)
    try:
        queue.enqueue(job.id)
    except QueueFault as e:
        logger.error("Failed to queue job %s: %s", job.id, e)
        try:
            store.update(job.id, status=JobStatus.FAILED, error=f"Failed to queue job: {e}")
        except ClipExportError as update_error:
            logger.error("Could not mark job %s failed: %s", job.id, update_error)
        raise

    logger.info("Queued job %s (%s, %s)", job.id, job.source_key, job.size.value)
    return job


def get_job_view(
    store: JobRecordStore,
    blob_store: BlobStore,
    job_id: str,
    expires_in: int = 3600,
) -> Dict[str, Any]:
    """Client-facing job status.

    Returns:
        camelCase job dict, plus ``resultUrl`` for completed jobs

    Raises:
        JobNotFoundError: if the id is unknown
    """
    job = store.get(job_id)
    if job is None:
        raise JobNotFoundError(job_id)

    view = job.to_api()
    if job.status == JobStatus.COMPLETED and job.result_key:
        view["resultUrl"] = blob_store.get_url(job.result_key, expires_in=expires_in)
    return view
