"""Pydantic models for configuration."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class QueueConfig(BaseModel):
    """Job record store and work queue backend."""

    backend: Literal["sqlite", "redis"] = Field(
        default="sqlite", description="Persistence backend for job records and the queue"
    )
    db_path: str = Field(
        default="storage/queue.db", description="SQLite database path (sqlite backend)"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL (redis backend)"
    )
    key_prefix: str = Field(default="job:", description="Redis key prefix for job records")
    queue_key: str = Field(default="job:queue", description="Redis list holding queue entries")


class StorageConfig(BaseModel):
    """Blob store backend for source uploads and rendered clips."""

    backend: Literal["local", "s3"] = Field(default="local", description="Blob store backend")
    local_path: str = Field(default="storage", description="Root directory (local backend)")
    download_url_base: str = Field(
        default="/storage/download",
        description="API route serving local blobs; retrieval URLs point here",
    )
    upload_url_base: str = Field(
        default="/storage/upload",
        description="API route accepting direct uploads (local backend)",
    )
    bucket: str = Field(default="", description="Bucket name (s3 backend)")
    region: str = Field(default="auto", description="Region (s3 backend)")
    endpoint_url: Optional[str] = Field(
        default=None, description="Custom endpoint for S3-compatible services (R2, MinIO)"
    )
    access_key: Optional[str] = Field(default=None, description="Access key id (s3 backend)")
    secret_key: Optional[str] = Field(default=None, description="Secret access key (s3 backend)")
    url_expires_s: int = Field(
        default=3600, gt=0, description="Lifetime of result retrieval URLs in seconds"
    )
    upload_prefix: str = Field(default="uploads", description="Key prefix for uploaded sources")
    result_prefix: str = Field(default="results", description="Key prefix for rendered clips")


class TranscodeConfig(BaseModel):
    """ffmpeg invocation and encoding policy."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = imageio-ffmpeg bundled binary)"
    )
    video_codec: str = Field(default="libx264", description="Video codec (H.264)")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="medium", description="Encoding speed preset")
    crf: int = Field(
        default=23, ge=0, le=51, description="Constant Rate Factor (0-51, lower = better quality)"
    )
    pixel_format: str = Field(default="yuv420p", description="Output pixel format")
    audio_codec: str = Field(default="aac", description="Audio codec when audio is kept")
    audio_bitrate: str = Field(default="128k", description="Audio bitrate when audio is kept")
    faststart: bool = Field(default=True, description="Move the moov atom to the file start")
    global_timeout_s: int = Field(
        default=600, gt=0, description="Maximum duration for one ffmpeg run in seconds"
    )
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Kill ffmpeg if no progress update in N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and commands on failure for debugging"
    )
    ffmpeg_loglevel: str = Field(
        default="error", description="ffmpeg log level: error, warning, info, verbose"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Directory for failure artifacts (None = system temp)"
    )


class WorkerConfig(BaseModel):
    """Worker loop timing."""

    poll_interval_s: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Wait between polls when the queue is empty"
    )
    error_backoff_s: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Wait after a queue or store fault"
    )
    progress_min_interval_s: float = Field(
        default=0.5, ge=0.0, description="Minimum spacing between progress writes"
    )
    store_retries: int = Field(
        default=3, ge=1, le=10, description="Attempts for job record writes before giving up"
    )
    temp_dir: Optional[str] = Field(
        default=None, description="Scratch directory for downloads and renders"
    )


class ApiConfig(BaseModel):
    """HTTP API settings."""

    client_poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Interval clients use to poll job status"
    )
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingConfig(BaseModel):
    """Root logger settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    format: str = Field(default="%(asctime)s %(levelname)s [%(name)s] %(message)s")


class ClipExportConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    transcode: TranscodeConfig = Field(default_factory=TranscodeConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ClipExportConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ClipExportConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db_path") is not None:
            config_dict["queue"]["db_path"] = cli_args["db_path"]
        if cli_args.get("queue_backend") is not None:
            config_dict["queue"]["backend"] = cli_args["queue_backend"]
        if cli_args.get("redis_url") is not None:
            config_dict["queue"]["redis_url"] = cli_args["redis_url"]
        if cli_args.get("storage_backend") is not None:
            config_dict["storage"]["backend"] = cli_args["storage_backend"]
        if cli_args.get("storage_path") is not None:
            config_dict["storage"]["local_path"] = cli_args["storage_path"]
        if cli_args.get("poll_interval") is not None:
            config_dict["worker"]["poll_interval_s"] = cli_args["poll_interval"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"].upper()

        return ClipExportConfig.from_dict(config_dict)

    def public_dump(self) -> dict:
        """Dump without credentials (for the API)."""
        data = self.model_dump()
        data["storage"].pop("access_key", None)
        data["storage"].pop("secret_key", None)
        return data
