"""Backend selection from an explicit configuration object."""

from typing import Tuple

from ..models import QueueConfig
from .backends import JobQueue, JobRecordStore


def build_backends(config: QueueConfig) -> Tuple[JobRecordStore, JobQueue]:
    """Create the record store and work queue named by config.backend.

    Called once at process startup; the pair shares one connection.
    """
    if config.backend == "sqlite":
        from .sqlite_backend import SQLiteJobQueue, SQLiteJobStore

        store = SQLiteJobStore(config.db_path)
        return store, SQLiteJobQueue(store)

    if config.backend == "redis":
        from .redis_backend import RedisJobQueue, RedisJobStore, connect

        client = connect(config.redis_url)
        return (
            RedisJobStore(client, key_prefix=config.key_prefix),
            RedisJobQueue(client, queue_key=config.queue_key),
        )

    raise ValueError(f"Unknown queue backend: {config.backend}")
