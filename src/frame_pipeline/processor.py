"""Video processor: resolves a job's input, extracts frames, packages them.

The processor runs inside the job's execution unit and blocks for the full
duration of the FFmpeg call. It knows nothing about persistence; progress is
reported through a callback that the job service turns into a store write.
"""

import logging
import os
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import (
    ExtractionFailed,
    ExtractionTimeout,
    InputNotFound,
    JobCancelled,
    NoFramesExtracted,
    PackagingFailed,
)
from .ffmpeg_runner import FfmpegProgress, FfmpegRunner
from .models import ProcessingConfig
from .queue.models import Job

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[int], None]

PROGRESS_EXTRACTING = 10
PROGRESS_PACKAGING = 70
PROGRESS_DONE = 100


@dataclass
class ProcessingResult:
    """Outcome of a successful run."""
    output_ref: str
    frame_count: int
    output_path: Path


def archive_name(job_id: str) -> str:
    """Deterministic archive file name for a job."""
    return f"frames_{job_id}.zip"


class FileLocator:
    """Resolves input references against the uploads directory.

    A reference matches, in order: an absolute path to an existing file, a
    file of exactly that name in the uploads directory, or the first file
    (sorted by name) whose name starts with the reference. Uploads are stored
    as ``<file id>_<timestamp>_<original name>``, so a bare file id resolves
    through the prefix rule.
    """

    def __init__(self, uploads_dir: str):
        self.uploads_dir = Path(uploads_dir)

    def locate(self, input_ref: str) -> Path:
        candidate = Path(input_ref)
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
            raise InputNotFound(f"Input file not found: {input_ref}")

        # Reject references that would escape the uploads directory
        if candidate.name != input_ref:
            raise InputNotFound(f"Input file not found: {input_ref}")

        exact = self.uploads_dir / input_ref
        if exact.is_file():
            return exact

        if self.uploads_dir.is_dir():
            matches = sorted(
                p for p in self.uploads_dir.iterdir()
                if p.is_file() and p.name.startswith(input_ref)
            )
            if matches:
                return matches[0]

        raise InputNotFound(f"Input file not found for reference: {input_ref}")


def package_frames(frames: List[Path], archive_path: Path) -> None:
    """Write frames into a zip archive, replacing any previous archive.

    The archive is written under a temporary name and renamed into place so
    readers never observe a partial file.
    """
    partial = archive_path.with_name(archive_path.name + ".partial")
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for frame in frames:
                zf.write(frame, arcname=frame.name)
        os.replace(partial, archive_path)
    except (OSError, zipfile.BadZipFile) as e:
        if partial.exists():
            partial.unlink()
        raise PackagingFailed(f"Failed to create archive {archive_path.name}: {e}") from e


class VideoProcessor:
    """Turns one job into a frame archive.

    Steps: locate input → progress 10 → FFmpeg → count frames → progress 70
    → package → progress 100. The job-scoped temp directory is removed on
    every exit path.
    """

    def __init__(
        self,
        config: ProcessingConfig,
        runner: Optional[FfmpegRunner] = None,
        locator: Optional[FileLocator] = None,
    ):
        self.config = config
        self.runner = runner or FfmpegRunner(
            timeout_s=config.timeout_s,
            kill_grace_period_s=config.kill_grace_period_s,
            ffmpeg_loglevel=config.ffmpeg_loglevel,
            ffmpeg_path=config.ffmpeg_path,
        )
        self.locator = locator or FileLocator(config.uploads_dir)
        self.output_dir = Path(config.output_dir)
        self.temp_root = Path(config.temp_dir)

    def job_temp_dir(self, job_id: str) -> Path:
        return self.temp_root / job_id

    def process(self, job: Job, report_progress: ProgressReporter) -> ProcessingResult:
        """Run the pipeline for a job.

        Args:
            job: Job in PROCESSING state
            report_progress: Persists a progress value; raises JobCancelled
                if the job was cancelled meanwhile

        Returns:
            ProcessingResult with archive name and frame count

        Raises:
            InputNotFound, ExtractionFailed, ExtractionTimeout,
            NoFramesExtracted, PackagingFailed, JobCancelled
        """
        input_path = self.locator.locate(job.input_ref)
        logger.info("Job %s: input resolved to %s", job.id, input_path)

        temp_dir = self.job_temp_dir(job.id)
        # a leftover directory from a crashed run would inflate the frame count
        shutil.rmtree(temp_dir, ignore_errors=True)
        temp_dir.mkdir(parents=True)

        try:
            report_progress(PROGRESS_EXTRACTING)

            frames = self._extract(job, input_path, temp_dir)

            report_progress(PROGRESS_PACKAGING)

            output_ref = archive_name(job.id)
            output_path = self.output_dir / output_ref
            logger.info("Job %s: packaging %d frames into %s", job.id, len(frames), output_path)
            package_frames(frames, output_path)

            try:
                report_progress(PROGRESS_DONE)
            except JobCancelled:
                output_path.unlink(missing_ok=True)
                raise

            return ProcessingResult(
                output_ref=output_ref,
                frame_count=len(frames),
                output_path=output_path,
            )
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def _extract(self, job: Job, input_path: Path, temp_dir: Path) -> List[Path]:
        def on_progress(progress: FfmpegProgress) -> None:
            logger.debug(
                "Job %s: ffmpeg at %.1fs, %d frames", job.id, progress.current_time_s, progress.frame
            )

        result = self.runner.extract_frames(
            source_path=str(input_path),
            output_dir=str(temp_dir),
            frame_pattern=self.config.frame_pattern,
            frames_per_second=self.config.frames_per_second,
            progress_callback=on_progress,
        )

        if result.timed_out:
            raise ExtractionTimeout(
                f"FFmpeg timed out after {self.config.timeout_s}s", returncode=result.returncode
            )
        if result.returncode != 0:
            detail = result.stderr.strip()[-500:] if result.stderr else "no output"
            raise ExtractionFailed(
                f"FFmpeg failed with exit code {result.returncode}: {detail}",
                returncode=result.returncode,
            )

        suffix = Path(self.config.frame_pattern).suffix
        frames = sorted(p for p in temp_dir.iterdir() if p.is_file() and p.suffix == suffix)
        if not frames:
            raise NoFramesExtracted(f"No frames extracted from {input_path.name}")

        logger.info("Job %s: extracted %d frames in %.1fs", job.id, len(frames), result.duration_s)
        return frames
