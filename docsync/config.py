"""Configuration management for the conversion server."""

from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    service_name: str = "docsync-server"
    host: str = Field(default="127.0.0.1", alias="DSYNC_UI_HOST")
    port: int = Field(default=4174, alias="DSYNC_UI_PORT")
    environment: str = Field(
        default="production",
        validation_alias=AliasChoices("DSYNC_ENV", "NODE_ENV", "environment"),
    )
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    # Job storage
    job_root: Path = Field(default=Path("tmp/ui-jobs"), alias="DSYNC_JOB_ROOT")
    job_ttl_ms: int = Field(
        default=24 * 60 * 60 * 1000,
        alias="DSYNC_UI_JOB_TTL_MS",
        description="Age after which a job directory is swept",
    )
    job_max_keep: int = Field(
        default=200, alias="DSYNC_UI_MAX_JOBS", description="Max retained job directories")

    # Request limits
    max_body_bytes: int = Field(
        default=25 * 1024 * 1024, alias="DSYNC_UI_MAX_BYTES")
    max_requests_per_minute: int = Field(
        default=30, alias="DSYNC_MAX_REQUESTS_PER_MINUTE")
    max_concurrent_conversions: int = Field(
        default=10,
        alias="DSYNC_MAX_CONCURRENT_CONVERSIONS",
        description="Max conversion requests in flight before answering 503",
    )

    # Process pool
    max_concurrent_processes: int = Field(
        default=5, alias="DSYNC_MAX_CONCURRENT_PROCESSES")
    process_timeout_seconds: float = Field(
        default=300,
        alias="DSYNC_PROCESS_TIMEOUT_SECONDS",
        description="Kill a conversion process after this long; 0 disables",
    )
    script_path: Path = Field(
        default=Path("scripts/docx-sync.sh"), alias="DSYNC_SCRIPT_PATH")

    # Conversion cache
    conversion_cache_ttl_ms: int = Field(
        default=60 * 60 * 1000, alias="DSYNC_CONVERSION_CACHE_TTL_MS")
    conversion_cache_max_size: int = Field(
        default=100, alias="DSYNC_CONVERSION_CACHE_MAX_SIZE")

    # Static assets
    public_dir: Path = Field(
        default=Path("ui-server/public"), alias="DSYNC_PUBLIC_DIR")
    static_cache_ttl_seconds: float = Field(
        default=300, alias="DSYNC_STATIC_CACHE_TTL_SECONDS")
    static_cache_max_entries: int = Field(
        default=100, alias="DSYNC_STATIC_CACHE_MAX_ENTRIES")

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "DEBUG" if self.is_development else "INFO"


# Global settings instance
settings = Settings()
