"""Pydantic models for configuration and data validation."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class StorageConfig(BaseModel):
    """Job store backend."""

    backend: Literal["sqlite", "memory"] = Field(
        default="sqlite", description="sqlite for durable state, memory for throwaway runs"
    )
    db_path: str = Field(default="data/queue.db", description="SQLite database file")
    busy_timeout_s: float = Field(
        default=5.0, gt=0.0, description="How long a connection waits on a locked database"
    )


class VideosConfig(BaseModel):
    """Where source videos live and where outputs go."""

    root: str = Field(default="videos", description="Directory scanned for source files")
    extensions: List[str] = Field(default_factory=lambda: [".mp4"], min_length=1)
    recursive: bool = Field(default=True, description="Scan sub-directories")
    output_dir: str = Field(default="output", description="Directory for transcoded files")

    @field_validator("extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        """Lower-case extensions and ensure a leading dot."""
        return [(e if e.startswith(".") else f".{e}").lower() for e in v]


class WorkersConfig(BaseModel):
    """Worker pool and dispatcher settings."""

    enabled: bool = Field(default=True, description="Run workers inside the API process")
    count: int = Field(default=2, ge=1, le=64, description="Concurrent transcodes (W)")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Longest idle wait before re-checking for pending jobs"
    )
    job_timeout_s: float = Field(
        default=3600.0, gt=0.0, description="Maximum wall time for one transcode"
    )
    cancel_grace_s: float = Field(
        default=10.0, ge=0.0, description="Wait for a cancelled transcode to stop"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="Seconds between heartbeats of a running job"
    )
    stale_after_s: Optional[float] = Field(
        default=600.0,
        gt=0.0,
        description="Fail processing jobs silent for this long (None disables reclaim)",
    )

    @model_validator(mode="after")
    def stale_after_exceeds_heartbeat(self) -> "WorkersConfig":
        if self.stale_after_s is not None and self.stale_after_s <= self.heartbeat_interval_s:
            raise ValueError(
                f"stale_after_s ({self.stale_after_s}) must be > "
                f"heartbeat_interval_s ({self.heartbeat_interval_s})"
            )
        return self


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, gt=0, lt=65536)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    default_page_size: int = Field(default=10, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    discover_on_list: bool = Field(
        default=True, description="Scan the videos root on every unprocessed listing"
    )

    @model_validator(mode="after")
    def default_within_max(self) -> "ApiConfig":
        if self.default_page_size > self.max_page_size:
            raise ValueError("default_page_size must be <= max_page_size")
        return self


class FfmpegConfig(BaseModel):
    """FFmpeg transcoder settings."""

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
    ] = Field(default="medium", description="x264 speed preset")
    audio_codec: str = Field(default="copy", description="Audio codec (copy keeps the source)")
    no_progress_timeout_s: int = Field(
        default=120, gt=0, description="Kill ffmpeg if no progress update in N seconds"
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save FFmpeg logs and commands on failure for debugging"
    )
    loglevel: str = Field(default="info", description="FFmpeg log level")
    temp_dir: Optional[str] = Field(default=None, description="Directory for failure artifacts")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class QueueConfig(BaseModel):
    """Complete application configuration with validation."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    videos: VideosConfig = Field(default_factory=VideosConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    ffmpeg: FfmpegConfig = Field(default_factory=FfmpegConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "QueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "QueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["storage"]["db_path"] = cli_args["db"]
        if cli_args.get("memory"):
            config_dict["storage"]["backend"] = "memory"
        if cli_args.get("videos") is not None:
            config_dict["videos"]["root"] = cli_args["videos"]
        if cli_args.get("output") is not None:
            config_dict["videos"]["output_dir"] = cli_args["output"]
        if cli_args.get("workers") is not None:
            config_dict["workers"]["count"] = cli_args["workers"]
        if cli_args.get("no_workers"):
            config_dict["workers"]["enabled"] = False
        if cli_args.get("job_timeout") is not None:
            config_dict["workers"]["job_timeout_s"] = cli_args["job_timeout"]
        if cli_args.get("host") is not None:
            config_dict["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["api"]["port"] = cli_args["port"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]

        return QueueConfig.from_dict(config_dict)
