"""Job service: the operations callers and workers perform on jobs.

This module ties the store, the active-job cache, the video processor and
the completion notifier together.

Usage:
    service = JobService.from_config(resolve_config())

    job = service.submit("clip.mp4")        # PENDING, enqueued
    service.get_status(job.id)              # cache first, then store
    service.list_jobs()                     # newest first
    service.cancel(job.id)                  # PENDING/PROCESSING only

    service.execute(job_id)                 # body of one execution unit

Every write made by an execution unit is conditional on the status the unit
expects (``JobStore.put_if``). A unit that finds the job CANCELLED stops
without writing, and two units can never both claim the same PENDING job.
"""

import logging
import time
from typing import Callable, List, Optional, TypeVar

from .errors import InvalidTransition, JobCancelled, StoreUnavailable
from .models import PipelineConfig
from .notifier import CompletionNotifier, LoggingNotifier, build_notifier
from .processor import VideoProcessor
from .queue.backends import JobStore
from .queue.cache import ActiveJobCache
from .queue.models import Job, JobStatus
from .queue.sqlite_backend import open_store

logger = logging.getLogger(__name__)

CANCEL_ATTEMPTS = 3

T = TypeVar("T")


class JobService:
    """Submission, status, listing, cancellation and execution of jobs."""

    def __init__(
        self,
        store: JobStore,
        processor: VideoProcessor,
        notifier: Optional[CompletionNotifier] = None,
        cache: Optional[ActiveJobCache] = None,
        write_retry_attempts: int = 5,
        write_retry_base_delay_s: float = 0.1,
    ):
        """Initialize the service.

        Args:
            store: System of record for jobs and the pending list
            processor: Runs the frame extraction for one job
            notifier: Completion sink (default: log only)
            cache: Active-job cache (default: 1000 entries)
            write_retry_attempts: Attempts for an execution unit's own writes
            write_retry_base_delay_s: Base delay of the exponential backoff
        """
        self.store = store
        self.processor = processor
        self.notifier = notifier or LoggingNotifier()
        self.cache = cache if cache is not None else ActiveJobCache()
        self.write_retry_attempts = max(1, write_retry_attempts)
        self.write_retry_base_delay_s = write_retry_base_delay_s

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "JobService":
        """Build a service with the SQLite store and the FFmpeg processor."""
        store = open_store(config.store.db_path, ttl_s=config.store.job_ttl_s)
        return cls(
            store=store,
            processor=VideoProcessor(config.processing),
            notifier=build_notifier(config.notification.url, config.notification.timeout_s),
            cache=ActiveJobCache(config.cache.max_entries, ttl_s=config.store.job_ttl_s),
            write_retry_attempts=config.store.write_retry_attempts,
            write_retry_base_delay_s=config.store.write_retry_base_delay_s,
        )

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def submit(self, input_ref: str) -> Job:
        """Create a PENDING job and queue it for a worker.

        Raises:
            StoreUnavailable: If the record or the queue entry cannot be written
        """
        job = Job(input_ref=input_ref)
        self.store.put(job)
        self.store.enqueue(job.id)
        logger.info("Created processing job %s for input %s", job.id, input_ref)
        return job

    def get_status(self, job_id: str) -> Optional[Job]:
        """Return the job, preferring this process's active-job cache."""
        cached = self.cache.get(job_id)
        if cached is not None:
            return cached
        return self.store.get(job_id)

    def list_jobs(self) -> List[Job]:
        """All stored jobs, newest first."""
        return sorted(self.store.list_all(), key=lambda job: job.created_at, reverse=True)

    def cancel(self, job_id: str) -> bool:
        """Cancel a PENDING or PROCESSING job.

        Returns:
            True if the job is now CANCELLED because of this call, False if it
            does not exist or was already terminal
        """
        for _ in range(CANCEL_ATTEMPTS):
            job = self.store.get(job_id)
            if job is None:
                return False
            if job.is_terminal:
                logger.info("Job %s is %s, cannot cancel", job_id, job.status.value)
                return False

            expected = job.status
            job.cancel()
            if self.store.put_if(job, expected):
                if job_id in self.cache:
                    self.cache.put(job)
                logger.info("Cancelled processing job %s (was %s)", job_id, expected.value)
                return True
            # status moved underneath us (e.g. claimed by a worker); re-read

        logger.warning("Job %s: cancellation kept racing with the worker", job_id)
        return False

    # ------------------------------------------------------------------
    # Execution unit
    # ------------------------------------------------------------------

    def execute(self, job_id: str) -> Optional[Job]:
        """Run one dequeued job to a terminal state.

        Processor errors become a FAILED job; they never propagate. Only a
        store that stays unavailable through every retry escapes as
        StoreUnavailable.

        Returns:
            The job as last written by this unit, or None if the unit did not
            own the job (missing, already claimed, cancelled)
        """
        job = self._with_retries(job_id, "reading the record", lambda: self.store.get(job_id))
        if job is None:
            logger.warning("Job %s: record not found (expired?), skipping", job_id)
            return None
        if job.status != JobStatus.PENDING:
            logger.info("Job %s: status is %s, skipping execution", job_id, job.status.value)
            return None

        job.start_processing()
        if not self._persist(job, expected=JobStatus.PENDING):
            logger.info("Job %s: no longer pending (cancelled or claimed), skipping", job_id)
            return None

        logger.info("Starting processing job %s for input %s", job_id, job.input_ref)

        try:
            result = self.processor.process(job, lambda percent: self._report_progress(job, percent))
        except JobCancelled:
            logger.info("Job %s: cancelled during processing, stopping", job_id)
            self.cache.discard(job_id)
            return None
        except Exception as e:
            logger.error("Failed to process job %s: %s: %s", job_id, type(e).__name__, e)
            job.fail(f"{type(e).__name__}: {e}")
            if not self._persist(job, expected=JobStatus.PROCESSING):
                logger.info("Job %s: cancelled before failure could be recorded", job_id)
                return None
            return job

        job.complete(result.output_ref, result.frame_count)
        if not self._persist(job, expected=JobStatus.PROCESSING):
            logger.info("Job %s: cancelled before completion was recorded, discarding archive", job_id)
            result.output_path.unlink(missing_ok=True)
            return None

        logger.info("Completed processing job %s with %d frames", job_id, result.frame_count)
        self._notify(job)
        return job

    def _report_progress(self, job: Job, percent: int) -> None:
        """Persist a progress value; raise JobCancelled if the unit lost the job."""
        try:
            job.report_progress(percent)
        except InvalidTransition as e:
            raise JobCancelled(str(e)) from e

        if not self._persist(job, expected=JobStatus.PROCESSING):
            raise JobCancelled(f"Job {job.id} is no longer processing")

    def _persist(self, job: Job, expected: JobStatus) -> bool:
        """Conditionally write the job and mirror the outcome in the cache.

        A lost write means the record changed elsewhere (usually a cancel
        from another process), so this unit's cached copy is dropped and
        status reads fall through to the store.
        """
        written = self._with_retries(
            job.id,
            f"writing {job.status.value} (record may be stuck in {expected.value})",
            lambda: self.store.put_if(job, expected),
        )
        if written:
            self.cache.put(job)
        else:
            self.cache.discard(job.id)
        return written

    def _with_retries(self, job_id: str, action: str, operation: Callable[[], T]) -> T:
        """Run a store operation of an execution unit, retrying transient faults.

        The job id has already left the pending list, so a lost read or write
        would strand the job; StoreUnavailable is retried with exponential
        backoff before it is allowed to escape.
        """
        for attempt in range(self.write_retry_attempts):
            try:
                return operation()
            except StoreUnavailable as e:
                if attempt == self.write_retry_attempts - 1:
                    logger.error(
                        "Job %s: giving up %s after %d attempts: %s",
                        job_id, action, self.write_retry_attempts, e,
                    )
                    raise
                delay = self.write_retry_base_delay_s * (2 ** attempt)
                logger.warning(
                    "Job %s: store unavailable (attempt %d/%d), retrying in %.2fs: %s",
                    job_id, attempt + 1, self.write_retry_attempts, delay, e,
                )
                time.sleep(delay)
        raise AssertionError("unreachable")

    def _notify(self, job: Job) -> None:
        try:
            self.notifier.notify(job)
        except Exception:
            logger.exception("Job %s: completion notification failed", job.id)

    def close(self) -> None:
        self.notifier.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
