"""Redis implementations of JobRecordStore and JobQueue.

Layout:
- ``<key_prefix><id>``: one JSON document per job (camelCase keys)
- ``<queue_key>``: list of queue entries; producers LPUSH, workers RPOP,
  so the right end always holds the oldest entry

RPOP is atomic on the server, which gives exactly-once pops across any
number of worker processes.
"""

import logging
from typing import Any, Optional

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from ..errors import DuplicateJobError, JobNotFoundError, JobStateError, QueueFault, StoreFault
from .backends import JobQueue, JobRecordStore
from .models import Job, QueueEntry, utcnow, validate_update_fields

logger = logging.getLogger(__name__)


def connect(redis_url: str) -> redis.Redis:
    """Create a client that returns str instead of bytes."""
    return redis.Redis.from_url(redis_url, decode_responses=True)


class RedisJobStore(JobRecordStore):
    """Job records as JSON strings, updated with optimistic locking."""

    def __init__(self, client: redis.Redis, key_prefix: str = "job:", max_retries: int = 5):
        self.client = client
        self.key_prefix = key_prefix
        self.max_retries = max_retries

    def _key(self, job_id: str) -> str:
        return f"{self.key_prefix}{job_id}"

    def create(self, job: Job) -> None:
        try:
            created = self.client.set(
                self._key(job.id), job.model_dump_json(by_alias=True), nx=True
            )
        except RedisError as e:
            raise StoreFault(f"Failed to create job {job.id}: {e}") from e

        if not created:
            raise DuplicateJobError(job.id)

    def get(self, job_id: str) -> Optional[Job]:
        try:
            raw = self.client.get(self._key(job_id))
        except RedisError as e:
            raise StoreFault(f"Failed to read job {job_id}: {e}") from e

        if raw is None:
            return None
        return Job.model_validate_json(raw)

    def update(self, job_id: str, **fields: Any) -> Job:
        values = validate_update_fields(fields)
        key = self._key(job_id)

        for _ in range(self.max_retries):
            try:
                with self.client.pipeline() as pipe:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        raise JobNotFoundError(job_id)

                    job = Job.model_validate_json(raw)
                    if job.is_terminal:
                        raise JobStateError(
                            f"Job {job_id} is {job.status.value} and can no longer change"
                        )

                    updated = Job.model_validate(
                        {**job.model_dump(), **values, "updated_at": utcnow()}
                    )

                    pipe.multi()
                    pipe.set(key, updated.model_dump_json(by_alias=True))
                    pipe.execute()
                    return updated
            except WatchError:
                logger.debug("Job %s changed during update, retrying", job_id)
                continue
            except RedisError as e:
                raise StoreFault(f"Failed to update job {job_id}: {e}") from e

        raise StoreFault(f"Gave up updating job {job_id} after {self.max_retries} conflicts")

    def close(self) -> None:
        self.client.close()


class RedisJobQueue(JobQueue):
    """FIFO queue on a Redis list."""

    def __init__(self, client: redis.Redis, queue_key: str = "job:queue"):
        self.client = client
        self.queue_key = queue_key

    def enqueue(self, job_id: str) -> None:
        entry = QueueEntry(job_id=job_id)
        try:
            self.client.lpush(self.queue_key, entry.model_dump_json(by_alias=True))
        except RedisError as e:
            raise QueueFault(f"Failed to enqueue {job_id}: {e}") from e

    def dequeue(self) -> Optional[str]:
        try:
            raw = self.client.rpop(self.queue_key)
        except RedisError as e:
            raise QueueFault(f"Failed to pop from {self.queue_key}: {e}") from e

        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        # Producers that push bare ids are accepted as well.
        try:
            return QueueEntry.model_validate_json(raw).job_id
        except ValidationError:
            return raw

    def depth(self) -> int:
        try:
            return int(self.client.llen(self.queue_key))
        except RedisError as e:
            raise QueueFault(f"Failed to read queue depth: {e}") from e
