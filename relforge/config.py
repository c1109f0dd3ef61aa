"""Runtime settings — env-driven via pydantic-settings.

Reads from a ``.env`` file and ``RELFORGE_*`` environment variables.
Each CLI command builds a ``RelforgeSettings`` when it runs and passes it
down. Engine components take settings through their constructors.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelforgeSettings(BaseSettings):
    """Machine-level configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export RELFORGE_CACHE_DIR=/mnt/shared/relforge-cache
        export RELFORGE_MAX_BUILD_WORKERS=8
        export RELFORGE_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RELFORGE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    log_level: str = "INFO"
    debug: bool = False

    # Storage paths
    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".relforge" / "cache")
    blobstore_path: Path = Field(default_factory=lambda: Path.home() / ".relforge" / "blobstore")
    registry_path: Path = Path(".relforge/registry.db")

    # Worker pools
    max_build_workers: int = Field(default=4, ge=1)
    max_upload_workers: int = Field(default=2, ge=1)

    # Blobstore retry policy
    upload_attempts: int = Field(default=3, ge=1)
    upload_backoff_seconds: float = Field(default=0.5, ge=0)

    # Index / release-index locks
    lock_timeout_seconds: float = Field(default=30.0, gt=0)

