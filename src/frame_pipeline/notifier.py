"""
Completion notifier - best-effort signal to an external collaborator when a
job completes.

Delivery is fire-and-forget: ``notify`` returns immediately and the request
runs on a background thread. Failures are logged and never touch the job.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .queue.models import Job

logger = logging.getLogger(__name__)

COMPLETED_EVENT = "job.completed"


def build_payload(job: Job) -> dict[str, Any]:
    """Build the job.completed event body."""
    return {
        "event": COMPLETED_EVENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "job_id": job.id,
        "status": job.status.value,
        "input_ref": job.input_ref,
        "output_ref": job.output_ref,
        "frame_count": job.frame_count,
    }


class CompletionNotifier:
    """Base notifier: logs the completion and does nothing else."""

    def notify(self, job: Job) -> None:
        logger.info("Notifying completion of job %s (%s)", job.id, job.output_ref)

    def close(self) -> None:
        pass


class LoggingNotifier(CompletionNotifier):
    """Used when no notification endpoint is configured."""


class HttpCompletionNotifier(CompletionNotifier):
    """
    POSTs a JSON event to a notification endpoint.

    One background thread delivers events in order; a slow or unreachable
    endpoint delays later notifications but never the worker.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the notifier.

        Args:
            url: Endpoint receiving the event
            timeout_seconds: HTTP request timeout
            client: Pre-built client (tests inject a MockTransport client)
        """
        self.url = url
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notifier")

    def notify(self, job: Job) -> Future:
        payload = build_payload(job)
        future = self._executor.submit(self._send, payload)
        future.add_done_callback(self._log_failure)
        return future

    def _send(self, payload: dict[str, Any]) -> int:
        response = self._client.post(
            self.url,
            json=payload,
            headers={"X-Webhook-Event": payload["event"], "X-Job-Id": payload["job_id"]},
        )
        response.raise_for_status()
        logger.info(
            "Notification delivered: %s for job %s (status %s)",
            payload["event"], payload["job_id"], response.status_code,
        )
        return response.status_code

    @staticmethod
    def _log_failure(future: Future) -> None:
        error = future.exception()
        if error is None:
            return
        if isinstance(error, httpx.HTTPStatusError):
            logger.warning("Notification rejected: HTTP %s", error.response.status_code)
        elif isinstance(error, httpx.RequestError):
            logger.warning("Notification failed: %s", error)
        else:
            logger.error("Notification failed unexpectedly", exc_info=error)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()


def build_notifier(url: Optional[str], timeout_seconds: float = 5.0) -> CompletionNotifier:
    """Pick the notifier for the configured endpoint."""
    if url:
        return HttpCompletionNotifier(url, timeout_seconds=timeout_seconds)
    return LoggingNotifier()
