"""
Worker Configuration

Settings class using pydantic-settings for environment variable loading.
Defines storage locations, remote generation credentials, concurrency
limits and timeouts for the render worker.
"""

import tempfile
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Worker settings loaded from environment variables.

    All settings can be overridden via environment variables.
    For example, clip_concurrency can be set via FAL_CLIP_CONCURRENCY.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Storage
    storage_path: str = Field(
        default="/data",
        alias="STORAGE_PATH",
        description="Root path of the local asset store",
    )
    work_root: str = Field(
        default_factory=tempfile.gettempdir,
        alias="RENDER_WORK_ROOT",
        description="Parent directory for per-job working directories",
    )
    cache_namespace: str = Field(
        default="cache/render",
        alias="RENDER_CACHE_NAMESPACE",
        description="Storage prefix of the content-addressed render cache",
    )
    output_extension: str = Field(
        default="mp4",
        alias="RENDER_OUTPUT_EXT",
        description="Container extension for artifacts and clips",
    )
    trust_existing_output: bool = Field(
        default=False,
        alias="RENDER_TRUST_EXISTING_OUTPUT",
        description="Reuse {project}/movie.<ext> when present (fast path, not the cache)",
    )

    # Redis / Database
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL",
    )
    database_url: str = Field(
        default="sqlite:////data/db/reelworker.db",
        alias="DATABASE_URL",
        description="Job ledger database URL",
    )

    # Remote clip generation
    fal_api_key: Optional[str] = Field(
        default=None,
        alias="FAL_API_KEY",
        description="Remote generation API key; remote generation is disabled when unset",
    )
    fal_queue_url: str = Field(
        default="https://queue.fal.run",
        alias="FAL_QUEUE_URL",
        description="Base URL of the remote generation queue",
    )
    clip_models: str = Field(
        default=(
            "fal-ai/ltx-video-13b-distilled/image-to-video,"
            "fal-ai/veo3/fast/image-to-video"
        ),
        alias="FAL_CLIP_MODELS",
        description="Comma-separated, ordered list of candidate models",
    )
    clip_concurrency: int = Field(
        default=2,
        ge=1,
        alias="FAL_CLIP_CONCURRENCY",
        description="Maximum scenes acquired in parallel",
    )
    clip_poll_interval: float = Field(
        default=3.0,
        gt=0,
        alias="FAL_RENDER_POLL_SECONDS",
        description="Seconds between status polls",
    )
    clip_timeout: float = Field(
        default=600.0,
        gt=0,
        alias="FAL_RENDER_TIMEOUT_SECONDS",
        description="Overall polling timeout per candidate model",
    )
    clip_max_seconds: int = Field(
        default=8,
        ge=1,
        alias="FAL_CLIP_MAX_SECONDS",
        description="Longest clip requested from the remote service",
    )

    # Retries
    retry_max: int = Field(default=3, ge=1, alias="RETRY_MAX")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="RETRY_BASE_DELAY_SECONDS")

    # Progress
    progress_flush_interval: float = Field(
        default=0.9,
        ge=0,
        alias="PROGRESS_FLUSH_SECONDS",
        description="Minimum seconds between durable progress writes per job",
    )
    progress_expiry_seconds: int = Field(
        default=86400,
        alias="PROGRESS_EXPIRY_SECONDS",
        description="Redis TTL of persisted progress snapshots",
    )

    # Timeouts
    scene_timeout: int = Field(default=300, alias="RENDER_SCENE_TIMEOUT")
    assemble_timeout: int = Field(default=900, alias="RENDER_ASSEMBLE_TIMEOUT")
    render_timeout: int = Field(default=3600, alias="RENDER_JOB_TIMEOUT")

    # Output
    fps: int = Field(default=30, ge=1, alias="RENDER_FPS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    @property
    def clip_model_list(self) -> List[str]:
        """Parse candidate models from comma-separated string to list."""
        return [m.strip() for m in self.clip_models.split(",") if m.strip()]

    @property
    def remote_generation_enabled(self) -> bool:
        return bool(self.fal_api_key)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached worker settings instance.

    Uses lru_cache to ensure settings are only loaded once per process.

    Returns:
        Settings: Worker settings instance
    """
    return Settings()
