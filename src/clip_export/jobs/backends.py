from __future__ import annotations

"""Abstract base classes for the job record store and the work queue.

The record store and the queue are deliberately separate: the queue only
holds job identifiers, so queue depth and processing order are independent
of record size and mutation rate. Local implementations live in
sqlite_backend, shared ones in redis_backend.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .models import Job


class JobRecordStore(ABC):
    """Persistent job records keyed by id.

    Implementations must provide:
    - Guarded create (duplicate ids rejected)
    - Point lookups
    - Partial updates that refresh updated_at
    - Read-only terminal records
    """

    @abstractmethod
    def create(self, job: "Job") -> None:
        """Insert a new job record.

        Args:
            job: Fully populated job (status=queued, progress=0)

        Raises:
            DuplicateJobError: if the id already exists
            StoreFault: on persistence failure
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional["Job"]:
        """Fetch a job by id.

        Returns:
            Job, or None if the id is unknown

        Raises:
            StoreFault: on persistence failure
        """
        pass

    @abstractmethod
    def update(self, job_id: str, **fields: Any) -> "Job":
        """Merge fields into the stored record and refresh updated_at.

        Args:
            job_id: Job identifier
            **fields: Subset of status, progress, result_key, error

        Returns:
            The updated record

        Raises:
            JobNotFoundError: if the id does not exist
            JobStateError: if a write-once field is named or the stored
                record is already terminal
            StoreFault: on persistence failure

        Implementation notes:
        - Last write wins; a job has exactly one writer at a time
        """
        pass

    def close(self) -> None:
        """Release connections (optional)."""


class JobQueue(ABC):
    """FIFO queue of job identifiers.

    Implementations must provide:
    - Atomic dequeue (select-and-remove in one step)
    - FIFO order by enqueue time
    - A None sentinel for an empty queue
    """

    @abstractmethod
    def enqueue(self, job_id: str) -> None:
        """Append a job id to the tail.

        Raises:
            QueueFault: on persistence failure
        """
        pass

    @abstractmethod
    def dequeue(self) -> Optional[str]:
        """Atomically remove and return the oldest job id.

        Returns:
            Job id, or None if the queue is empty (normal condition)

        Raises:
            QueueFault: on persistence failure

        Implementation notes:
        - MUST be safe across processes; two workers never get the same id
        """
        pass

    @abstractmethod
    def depth(self) -> int:
        """Number of entries waiting."""
        pass

    def close(self) -> None:
        """Release connections (optional)."""
