"""In-memory shadow of recently touched jobs.

The cache is non-authoritative: every mutation is written to the store first
and then mirrored here, so a cached record is never newer than the store.
Entries are written by the execution unit that owns the job and by a
successful cancel; the internal lock only guards the mapping during eviction.
An entry lives no longer than the store keeps the record it mirrors.
"""

import threading
import time
from collections import OrderedDict
from typing import Optional, Tuple

from .models import Job


class ActiveJobCache:
    """Bounded read-through cache keyed by job id.

    Eviction removes the least recently written terminal jobs first; active
    jobs are only evicted when every entry is active. Entries older than
    ``ttl_s`` are dropped on access.
    """

    def __init__(self, max_entries: int = 1000, ttl_s: Optional[float] = None):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_s = ttl_s
        self._entries: "OrderedDict[str, Tuple[float, Job]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._live(job_id)
        # copies keep callers from mutating the shared shadow
        return job.model_copy(deep=True) if job is not None else None

    def put(self, job: Job) -> None:
        snapshot = job.model_copy(deep=True)
        with self._lock:
            self._entries[job.id] = (time.monotonic(), snapshot)
            self._entries.move_to_end(job.id)
            self._evict()

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def _live(self, job_id: str) -> Optional[Job]:
        entry = self._entries.get(job_id)
        if entry is None:
            return None
        written_at, job = entry
        if self.ttl_s is not None and time.monotonic() - written_at >= self.ttl_s:
            # the store record has expired too
            del self._entries[job_id]
            return None
        return job

    def _evict(self) -> None:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return

        terminal = [job_id for job_id, (_, job) in self._entries.items() if job.is_terminal]
        for job_id in terminal[:overflow]:
            del self._entries[job_id]
            overflow -= 1

        while overflow > 0:
            self._entries.popitem(last=False)
            overflow -= 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return isinstance(job_id, str) and self._live(job_id) is not None
