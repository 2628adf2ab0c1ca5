"""Worker pool and polling scheduler.

This module provides bounded parallel job execution with:
- ThreadPoolExecutor for FFmpeg-bound work (the heavy lifting is a subprocess)
- A slot semaphore so the scheduler never dequeues more than it can run
- Supervised completion: a crashed execution unit is logged, never lost
- A polling loop that keeps running through store outages
- Graceful shutdown handling
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Set

from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)


class JobWorkerPool:
    """Thread pool with a fixed number of execution slots.

    A slot is reserved *before* work is dequeued and released when the
    execution unit finishes, however it finishes. The scheduler therefore
    never holds a dequeued job id it has no capacity to run.

    Usage:
        with JobWorkerPool(max_workers=4) as pool:
            if pool.try_reserve():
                pool.submit_reserved(fn, job_id)
    """

    def __init__(self, max_workers: int):
        """Initialize worker pool.

        Args:
            max_workers: Upper bound on concurrently executing jobs
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        self.max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots = threading.BoundedSemaphore(max_workers)
        self._in_flight: Set[Future] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    def __enter__(self):
        """Create worker threads on context entry."""
        self.start()
        return self

    def __exit__(self, *args):
        """Shutdown worker pool on context exit."""
        self.shutdown(wait=True)

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="job-worker"
            )

    @property
    def active_count(self) -> int:
        """Execution units submitted and not yet finished."""
        with self._lock:
            return len(self._in_flight)

    def try_reserve(self) -> bool:
        """Claim a free slot without blocking."""
        return self._slots.acquire(blocking=False)

    def release(self) -> None:
        """Return a slot reserved with try_reserve that was not used."""
        self._slots.release()

    def submit_reserved(self, fn: Callable, *args, **kwargs) -> Future:
        """Run fn in a previously reserved slot.

        Returns:
            Future handle; the slot is released when it completes
        """
        if not self._executor:
            self.release()
            raise RuntimeError("Worker pool not initialized (use with statement)")

        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except BaseException:
            self.release()
            raise

        with self._lock:
            self._in_flight.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future) -> None:
        self._slots.release()
        with self._idle:
            self._in_flight.discard(future)
            self._idle.notify_all()

        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Execution unit crashed: %s", error, exc_info=error)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight units.

        Returns:
            True if nothing is running anymore
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    def shutdown(self, wait: bool = True):
        """Graceful shutdown.

        Args:
            wait: If True, wait for running jobs to complete
        """
        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None


class JobScheduler:
    """Polls the store's pending list and hands jobs to the worker pool.

    Each tick reserves a slot, attempts one dequeue and, when an id comes
    back, dispatches ``service.execute(job_id)`` without waiting for it. A
    store failure during a tick is logged and the loop carries on.

    Usage:
        scheduler = JobScheduler(service, JobWorkerPool(4))
        scheduler.start()       # background thread
        ...
        scheduler.stop()

        # or, in the foreground:
        scheduler.run_forever()
    """

    def __init__(
        self,
        service,
        pool: JobWorkerPool,
        poll_interval_s: float = 1.0,
        dequeue_timeout_s: float = 1.0,
        shutdown_timeout_s: float = 30.0,
    ):
        """
        Args:
            service: JobService providing ``store`` and ``execute``
            pool: Worker pool that bounds concurrency
            poll_interval_s: Delay between ticks
            dequeue_timeout_s: Maximum wait for work within one tick
            shutdown_timeout_s: How long stop() waits for running jobs
        """
        self.service = service
        self.pool = pool
        self.poll_interval_s = poll_interval_s
        self.dequeue_timeout_s = dequeue_timeout_s
        self.shutdown_timeout_s = shutdown_timeout_s
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @classmethod
    def from_config(cls, service, config) -> "JobScheduler":
        """Build a scheduler from a WorkerConfig."""
        return cls(
            service,
            JobWorkerPool(config.max_concurrent_jobs),
            poll_interval_s=config.poll_interval_s,
            dequeue_timeout_s=config.dequeue_timeout_s,
            shutdown_timeout_s=config.shutdown_timeout_s,
        )

    def poll_once(self) -> Optional[Future]:
        """Run one scheduling tick.

        Returns:
            Future of the dispatched execution unit, or None if nothing was
            dispatched (no free slot, empty queue, store unavailable)
        """
        self.pool.start()
        if not self.pool.try_reserve():
            logger.debug("All %d worker slots busy, not polling", self.pool.max_workers)
            return None

        try:
            job_id = self.service.store.dequeue(timeout=self.dequeue_timeout_s)
        except StoreUnavailable as e:
            self.pool.release()
            logger.warning("Store unavailable while polling, retrying next tick: %s", e)
            return None
        except BaseException:
            self.pool.release()
            raise

        if job_id is None:
            self.pool.release()
            return None

        logger.info("Dispatching job %s", job_id)
        return self.pool.submit_reserved(self._run_job, job_id)

    def _run_job(self, job_id: str) -> None:
        try:
            self.service.execute(job_id)
        except Exception:
            logger.exception("Job %s: execution unit failed", job_id)

    def run_forever(self) -> None:
        """Poll until stop() is called."""
        logger.info(
            "Scheduler started: up to %d concurrent jobs, polling every %.1fs",
            self.pool.max_workers, self.poll_interval_s,
        )
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Unexpected error in scheduler tick")
            self._stop_event.wait(self.poll_interval_s)
        logger.info("Scheduler stopped polling")

    def drain(self, timeout: Optional[float] = None) -> int:
        """Dispatch until the queue is empty and every dispatched job finished.

        Returns:
            Number of jobs dispatched
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        dispatched = 0
        while deadline is None or time.monotonic() < deadline:
            if self.poll_once() is not None:
                dispatched += 1
                continue
            if self.pool.active_count == 0 and self.service.store.pending_count() == 0:
                break
            time.sleep(self.poll_interval_s)
        return dispatched

    def start(self) -> None:
        """Run the polling loop on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="job-scheduler", daemon=True)
        self._thread.start()

    def stop(self, wait: bool = True) -> None:
        """Stop polling, then wait up to shutdown_timeout_s for running jobs."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

        finished = wait and self.pool.wait(self.shutdown_timeout_s)
        if wait and not finished:
            logger.warning(
                "%d job(s) still running after %.0fs shutdown timeout",
                self.pool.active_count, self.shutdown_timeout_s,
            )
        self.pool.shutdown(wait=finished)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for currently running jobs; True if none remain."""
        return self.pool.wait(timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()
