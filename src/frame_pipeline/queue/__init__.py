"""Job store, active-job cache and worker scheduling."""

from .backends import JobStore
from .cache import ActiveJobCache
from .models import Job, JobStatus, TERMINAL_STATUSES
from .sqlite_backend import SQLiteJobStore, open_store
from .worker import JobScheduler, JobWorkerPool

__all__ = [
    "JobStore",
    "ActiveJobCache",
    "Job",
    "JobStatus",
    "TERMINAL_STATUSES",
    "SQLiteJobStore",
    "open_store",
    "JobScheduler",
    "JobWorkerPool",
]
