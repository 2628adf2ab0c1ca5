"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StoreConfig(BaseModel):
    """Job store location and write policy."""

    db_path: str = Field(default="frame_pipeline.db", description="SQLite database path")
    job_ttl_s: int = Field(
        default=86400, gt=0, description="Lifetime of a job record after its last write"
    )
    write_retry_attempts: int = Field(
        default=5, ge=1, description="Attempts for a job's own status write before giving up"
    )
    write_retry_base_delay_s: float = Field(
        default=0.1, ge=0.0, description="Base delay for exponential backoff between write attempts"
    )


class WorkerConfig(BaseModel):
    """Polling loop and concurrency settings.

    ``max_concurrent_jobs`` has no default: every deployment states its cap.
    """

    max_concurrent_jobs: int = Field(..., gt=0, description="Upper bound on jobs executing at once")
    poll_interval_s: float = Field(default=1.0, gt=0.0, description="Delay between queue polls")
    dequeue_timeout_s: float = Field(
        default=1.0, ge=0.0, description="Maximum wait for work within a single poll"
    )
    shutdown_timeout_s: float = Field(
        default=30.0, ge=0.0, description="How long stop() waits for in-flight jobs"
    )


class ProcessingConfig(BaseModel):
    """Frame extraction and packaging settings."""

    uploads_dir: str = Field(default="uploads", description="Where input references are resolved")
    output_dir: str = Field(default="outputs", description="Where archives are written")
    temp_dir: str = Field(default="processing", description="Parent of job-scoped frame directories")
    frames_per_second: float = Field(
        default=1.0, gt=0.0, description="Sampling rate passed to ffmpeg's fps filter"
    )
    frame_pattern: str = Field(
        default="frame_%04d.png", description="Numbered output pattern for extracted frames"
    )
    ffmpeg_path: Optional[str] = Field(
        default=None, description="FFmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    timeout_s: int = Field(
        default=1800, gt=0, description="Maximum wall-clock duration of one extraction"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    ffmpeg_loglevel: str = Field(
        default="error", description="FFmpeg log level: error, warning, info, verbose"
    )

    @field_validator("frame_pattern")
    @classmethod
    def pattern_is_numbered(cls, v: str) -> str:
        """Validate that the pattern contains a printf-style frame number."""
        if "%" not in v or "d" not in v.split("%", 1)[1]:
            raise ValueError(f"frame_pattern must contain a %d placeholder, got {v!r}")
        return v


class NotificationConfig(BaseModel):
    """Completion notification sink."""

    url: Optional[str] = Field(
        default=None, description="Endpoint receiving job.completed events (None = log only)"
    )
    timeout_s: float = Field(default=5.0, gt=0.0, description="HTTP request timeout")


class CacheConfig(BaseModel):
    """Active-job cache bounds."""

    max_entries: int = Field(default=1000, ge=1, description="Maximum cached job records")


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Root log level"
    )


class PipelineConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    worker: WorkerConfig
    processing: ProcessingConfig = Field(default_factory=ProcessingConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "PipelineConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["store"]["db_path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["worker"]["max_concurrent_jobs"] = cli_args["workers"]
        if "poll_interval" in cli_args:
            config_dict["worker"]["poll_interval_s"] = cli_args["poll_interval"]
        if "uploads_dir" in cli_args:
            config_dict["processing"]["uploads_dir"] = cli_args["uploads_dir"]
        if "output_dir" in cli_args:
            config_dict["processing"]["output_dir"] = cli_args["output_dir"]
        if "notify_url" in cli_args:
            config_dict["notification"]["url"] = cli_args["notify_url"]
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return PipelineConfig.from_dict(config_dict)
