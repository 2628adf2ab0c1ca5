from __future__ import annotations

"""Abstract base class for job store backends.

The store is the system of record for job records and the FIFO list of job
ids awaiting a worker. The interface mirrors a key-value store with TTL and
list operations, so the local SQLite implementation can be swapped for a
networked key-value service without touching the worker or the service.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import Job, JobStatus


class JobStore(ABC):
    """Abstract job store interface.

    Implementations must provide:
    - Full-record upserts (no partial updates) that refresh the entry TTL
    - A conditional upsert keyed on the stored status
    - Thread-safe FIFO enqueue/dequeue of job ids
    - ``StoreUnavailable`` for every backend fault
    """

    @abstractmethod
    def put(self, job: "Job") -> None:
        """Upsert the full job record and refresh its TTL.

        Args:
            job: Complete job record to store
        """
        pass

    @abstractmethod
    def put_if(self, job: "Job", expected_status: "JobStatus") -> bool:
        """Upsert the full job record only if the stored status matches.

        Args:
            job: Complete job record to store
            expected_status: Status the stored record must currently have

        Returns:
            True if the record was written, False if the stored status
            differed or the record is absent/expired

        Implementation notes:
        - The check and the write MUST be atomic with respect to other
          writers (other threads and other processes sharing the store)
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional["Job"]:
        """Return the current record, or None if absent or expired."""
        pass

    @abstractmethod
    def list_all(self) -> List["Job"]:
        """Enumerate all unexpired jobs.

        Returns:
            Job records in no particular order (callers sort)
        """
        pass

    @abstractmethod
    def enqueue(self, job_id: str) -> None:
        """Append a job id to the pending-work list."""
        pass

    @abstractmethod
    def dequeue(self, timeout: float = 0.0) -> Optional[str]:
        """Pop the oldest pending job id.

        Args:
            timeout: Seconds to wait for work; 0 means do not wait

        Returns:
            Job id, or None if nothing arrived before the timeout

        Implementation notes:
        - MUST be atomic: an id is handed to exactly one caller
        """
        pass

    @abstractmethod
    def pending_count(self) -> int:
        """Number of ids waiting in the pending-work list."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Health probe; True if the backend answers."""
        pass

    def close(self) -> None:
        """Release backend resources."""
