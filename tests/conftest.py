import threading
import time
from pathlib import Path
from typing import List, Optional

import pytest

from frame_pipeline.ffmpeg_runner import FfmpegResult
from frame_pipeline.job_service import JobService
from frame_pipeline.models import ProcessingConfig
from frame_pipeline.notifier import CompletionNotifier
from frame_pipeline.processor import VideoProcessor
from frame_pipeline.queue.cache import ActiveJobCache
from frame_pipeline.queue.models import Job
from frame_pipeline.queue.sqlite_backend import SQLiteJobStore

UPLOAD_NAME = "file123_1700000000_clip.mp4"


class FakeRunner:
    """Stands in for FfmpegRunner: writes frame files instead of running ffmpeg."""

    def __init__(
        self,
        frames: int = 3,
        returncode: int = 0,
        stderr: str = "",
        timed_out: bool = False,
        gate: Optional[threading.Event] = None,
        hold_s: float = 0.0,
    ):
        self.frames = frames
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        self.gate = gate
        self.hold_s = hold_s
        self.calls: List[str] = []
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.running = 0
        self.max_running = 0

    def extract_frames(
        self,
        source_path,
        output_dir,
        frame_pattern="frame_%04d.png",
        frames_per_second=1.0,
        progress_callback=None,
    ) -> FfmpegResult:
        with self._lock:
            self.calls.append(source_path)
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=10)
            if self.hold_s:
                time.sleep(self.hold_s)

            if self.returncode == 0 and not self.timed_out:
                for i in range(1, self.frames + 1):
                    (Path(output_dir) / (frame_pattern % i)).write_bytes(b"\x89PNG fake frame")
        finally:
            with self._lock:
                self.running -= 1

        returncode = -1 if self.timed_out else self.returncode
        return FfmpegResult(
            success=returncode == 0,
            returncode=returncode,
            stderr=self.stderr,
            duration_s=0.01,
            timed_out=self.timed_out,
        )


class RecordingNotifier(CompletionNotifier):
    """Collects notified jobs."""

    def __init__(self, fail: bool = False):
        self.jobs: List[Job] = []
        self.fail = fail

    def notify(self, job: Job) -> None:
        self.jobs.append(job.model_copy(deep=True))
        if self.fail:
            raise RuntimeError("notification sink down")


@pytest.fixture
def store(tmp_path):
    """Create a SQLite job store in a temp directory."""
    store = SQLiteJobStore(str(tmp_path / "jobs.db"), dequeue_poll_interval_s=0.01)
    yield store
    store.close()


@pytest.fixture
def uploads_dir(tmp_path):
    uploads = tmp_path / "uploads"
    uploads.mkdir()
    (uploads / UPLOAD_NAME).write_bytes(b"not really a video" * 100)
    return uploads


@pytest.fixture
def processing_config(tmp_path, uploads_dir):
    return ProcessingConfig(
        uploads_dir=str(uploads_dir),
        output_dir=str(tmp_path / "outputs"),
        temp_dir=str(tmp_path / "processing"),
    )


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def service(store, processing_config, fake_runner, notifier):
    """JobService wired to the temp store and the fake ffmpeg runner."""
    return JobService(
        store=store,
        processor=VideoProcessor(processing_config, runner=fake_runner),
        notifier=notifier,
        cache=ActiveJobCache(),
        write_retry_attempts=3,
        write_retry_base_delay_s=0.0,
    )
