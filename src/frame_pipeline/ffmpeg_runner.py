"""FFmpeg runner with timeout enforcement and progress monitoring.

This module runs the frame-extraction step as an isolated subprocess. The
calling thread blocks for the full duration of the tool; a monitor thread
parses FFmpeg's machine-readable progress from stderr.

Key Features:
- Process isolation with subprocess.Popen
- Global wall-clock timeout with process tree cleanup (psutil)
- Real-time progress parsing from FFmpeg stderr
- Diagnostic stderr tail for failure messages
"""

import logging
import re
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 50


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    fps: float = 0.0                 # Current FPS
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Frames written so far
    last_update: float = 0.0         # Timestamp of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    timed_out: bool = False          # Wall-clock limit exceeded, process killed
    final_progress: Optional[FfmpegProgress] = None
    command: List[str] = field(default_factory=list)


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(timeout_s=600)
        >>> result = runner.extract_frames(
        ...     source_path="clip.mp4",
        ...     output_dir="processing/job_1",
        ...     frame_pattern="frame_%04d.png",
        ...     frames_per_second=1.0,
        ... )
        >>> result.success
        True
    """

    def __init__(
        self,
        timeout_s: int = 1800,
        kill_grace_period_s: int = 5,
        ffmpeg_loglevel: str = "error",
        ffmpeg_path: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        progress_interval_s: float = 2.0,
    ):
        """Initialize FFmpeg runner.

        Args:
            timeout_s: Maximum duration for any FFmpeg operation
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            ffmpeg_path: Executable to run (None = imageio-ffmpeg's binary)
            progress_callback: Optional callback for progress updates
            progress_interval_s: Minimum seconds between callback invocations
        """
        self.timeout_s = timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.ffmpeg_path = ffmpeg_path
        self.progress_callback = progress_callback
        self.progress_interval_s = progress_interval_s

    def build_extract_command(
        self,
        source_path: str,
        output_dir: str,
        frame_pattern: str = "frame_%04d.png",
        frames_per_second: float = 1.0,
    ) -> List[str]:
        """Build the frame sampling command (one image per 1/fps seconds)."""
        return [
            self.get_ffmpeg_exe(),
            "-y",  # Overwrite output
            "-i", str(source_path),
            "-vf", f"fps={frames_per_second:g}",
            "-progress", "pipe:2",  # Progress to stderr
            "-nostats",
            "-loglevel", self.ffmpeg_loglevel,
            str(Path(output_dir) / frame_pattern),
        ]

    def extract_frames(
        self,
        source_path: str,
        output_dir: str,
        frame_pattern: str = "frame_%04d.png",
        frames_per_second: float = 1.0,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Extract numbered frame images from a video.

        Args:
            source_path: Input video file
            output_dir: Existing directory receiving the frames
            frame_pattern: printf-style file name pattern for frames
            frames_per_second: Sampling rate
            progress_callback: Overrides the runner-level callback for this call

        Returns:
            FfmpegResult; the caller judges success by ``returncode``
        """
        cmd = self.build_extract_command(source_path, output_dir, frame_pattern, frames_per_second)
        return self._run_ffmpeg(cmd, progress_callback or self.progress_callback)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            progress_callback: Invoked from the monitor thread

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        progress = FfmpegProgress()
        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        logger.debug("Running: %s", " ".join(cmd))

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding="utf-8",
            errors="replace",  # undecodable bytes must not stop the stderr reader
            bufsize=1,  # Line buffered for real-time progress
        )

        monitor = threading.Thread(
            target=self._monitor_progress,
            args=(process.stderr, progress, stderr_tail, progress_callback),
            daemon=True,
        )
        monitor.start()

        timed_out = False
        try:
            returncode = process.wait(timeout=self.timeout_s)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning("FFmpeg exceeded %ss, killing pid %s", self.timeout_s, process.pid)
            self._kill_process_tree(process)
            returncode = -1
        except BaseException:
            # Interrupted while waiting: never leave the child running
            self._kill_process_tree(process)
            raise
        finally:
            monitor.join(timeout=2)
            if process.stderr:
                process.stderr.close()

        return FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr="".join(stderr_tail),
            duration_s=time.time() - start_time,
            timed_out=timed_out,
            final_progress=progress,
            command=cmd,
        )

    def _monitor_progress(
        self,
        stderr_stream,
        progress: FfmpegProgress,
        stderr_tail: deque,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
    ) -> None:
        """Monitor FFmpeg stderr for progress updates.

        Parses FFmpeg progress output, keeps the diagnostic tail, and
        invokes the callback at most every ``progress_interval_s``.

        FFmpeg progress format:
            frame=12
            fps=25.00
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        try:
            for line in stderr_stream:
                if "=" in line and not line.startswith(" "):
                    key = line.split("=", 1)[0].strip()
                else:
                    key = ""

                if key == "out_time":
                    match = re.search(r'out_time=(\d+):(\d+):(\d+)\.(\d+)', line)
                    if match:
                        h, m, s, frac = match.groups()
                        progress.current_time_s = (
                            int(h) * 3600 + int(m) * 60 + int(s) + float(f"0.{frac}")
                        )
                        progress.last_update = time.time()
                elif key == "frame":
                    match = re.search(r'frame=\s*(\d+)', line)
                    if match:
                        progress.frame = int(match.group(1))
                elif key == "fps":
                    match = re.search(r'fps=\s*([\d.]+)', line)
                    if match:
                        progress.fps = float(match.group(1))
                elif key == "speed":
                    match = re.search(r'speed=\s*([\d.]+)x', line)
                    if match:
                        progress.speed = float(match.group(1))
                elif key not in ("bitrate", "total_size", "out_time_us", "out_time_ms",
                                 "dup_frames", "drop_frames", "progress", "stream_0_0_q"):
                    stderr_tail.append(line)

                now = time.time()
                if progress_callback and now - last_callback >= self.progress_interval_s:
                    try:
                        progress_callback(progress)
                    except Exception:
                        # Callback errors must not kill the monitor thread
                        logger.exception("Progress callback failed")
                    last_callback = now
        except (OSError, ValueError) as e:
            # Stream closed underneath us after a kill
            logger.debug("Progress monitoring stopped: %s", e)

    def _kill_process_tree(self, process: subprocess.Popen) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. Send SIGTERM to the process and its children
        2. Wait grace period
        3. Send SIGKILL to survivors
        """
        try:
            parent = psutil.Process(process.pid)
        except psutil.NoSuchProcess:
            return

        children = parent.children(recursive=True)
        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(children + [parent], timeout=self.kill_grace_period_s)

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg pid %s did not exit after SIGKILL", process.pid)

    def get_ffmpeg_exe(self) -> str:
        """Get FFmpeg executable path."""
        if self.ffmpeg_path:
            return self.ffmpeg_path
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        exe = FfmpegRunner(ffmpeg_path=ffmpeg_path).get_ffmpeg_exe()
        subprocess.run(
            [exe, "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
