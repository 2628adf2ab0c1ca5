"""Pydantic models for job records and their lifecycle.

This module defines the job record persisted by the store and the state
machine every mutation goes through. All transitions are methods on ``Job``
so the worker, the service and the tests share one set of rules.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from ..errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    """Generate a job identifier that is never reused."""
    return f"job_{uuid.uuid4().hex}"


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        pending    → processing  (worker claims the job)
        processing → completed   (processor returned an archive)
        processing → failed      (processor raised)
        pending    → cancelled   (external request)
        processing → cancelled   (external request, cooperative)
    """

    PENDING = "pending"  # Queued, not yet claimed by a worker
    PROCESSING = "processing"  # Owned by exactly one execution unit
    COMPLETED = "completed"  # Archive produced (terminal)
    FAILED = "failed"  # Processor error recorded (terminal)
    CANCELLED = "cancelled"  # Cancelled by request (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class Job(BaseModel):
    """One request to extract frames from a media input and package them.

    The store is the system of record for this model; every transition below
    mutates the instance in place and the caller persists the full record.
    """

    id: str = Field(default_factory=new_job_id, description="Unique job identifier")
    input_ref: str = Field(..., min_length=1, description="Reference to the source media")
    status: JobStatus = Field(default=JobStatus.PENDING, description="Current job state")
    progress: int = Field(default=0, ge=0, le=100, description="Percent complete")
    created_at: datetime = Field(default_factory=utcnow, description="Submission time")
    started_at: Optional[datetime] = Field(default=None, description="Processing start time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal state time")
    output_ref: Optional[str] = Field(default=None, description="Archive name (completed only)")
    frame_count: Optional[int] = Field(default=None, gt=0, description="Frames in the archive")
    error: Optional[str] = Field(default=None, description="Failure cause (failed only)")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def can_transition(self, target: JobStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def _transition(self, target: JobStatus) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(
                f"Job {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def start_processing(self) -> None:
        """Claim the job for execution: sets started_at, resets progress."""
        self._transition(JobStatus.PROCESSING)
        self.started_at = utcnow()
        self.progress = 0

    def report_progress(self, percent: int) -> None:
        """Record progress; values below the current progress are ignored."""
        if self.status != JobStatus.PROCESSING:
            raise InvalidTransition(
                f"Job {self.id}: progress reported while {self.status.value}"
            )
        if not 0 <= percent <= 100:
            raise ValueError(f"progress must be within 0..100, got {percent}")
        self.progress = max(self.progress, percent)

    def complete(self, output_ref: str, frame_count: int) -> None:
        if not output_ref:
            raise ValueError("output_ref must be non-empty")
        if frame_count <= 0:
            raise ValueError(f"frame_count must be positive, got {frame_count}")
        self._transition(JobStatus.COMPLETED)
        self.progress = 100
        self.output_ref = output_ref
        self.frame_count = frame_count
        self.error = None
        self.completed_at = self._terminal_time()

    def fail(self, error: str) -> None:
        # progress stays at the last reported value
        self._transition(JobStatus.FAILED)
        self.error = error or "Unknown error"
        self.output_ref = None
        self.frame_count = None
        self.completed_at = self._terminal_time()

    def cancel(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = self._terminal_time()

    def _terminal_time(self) -> datetime:
        now = utcnow()
        if self.started_at and now < self.started_at:
            return self.started_at
        return now

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, payload: str) -> "Job":
        return cls.model_validate_json(payload)
