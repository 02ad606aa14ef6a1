"""Configuration settings for crossbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_work_dir() -> Path:
    """Return the default directory for per-run workspaces and logs."""
    return Path.home() / ".cache" / "crossbuild" / "work"


def _default_output_dir() -> Path:
    """Return the default directory for published bundles."""
    return Path.home() / ".local" / "share" / "crossbuild" / "bundles"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CROSSBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="CROSSBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Root directory for build workspaces, staging and logs",
    )
    output_dir: Path = Field(
        default_factory=_default_output_dir,
        description="Directory sink for published bundles",
    )

    # Publishing
    publish_url: str | None = Field(
        default=None,
        description="HTTP endpoint for bundle uploads (directory sink if unset)",
    )
    publish_token: str | None = Field(
        default=None,
        description="Bearer token for the HTTP sink",
    )

    # Container runtime and emulation
    container_runtime: str = Field(
        default="docker",
        description="Container runtime executable",
    )
    binfmt_image: str = Field(
        default="tonistiigi/binfmt:latest",
        description="Image used to register foreign-architecture emulators",
    )
    emulation_mode: Literal["auto", "always", "never"] = Field(
        default="auto",
        description="When to register emulation before building",
    )
    emulation_platforms: str = Field(
        default="all",
        description="Platforms passed to the binfmt installer",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=1,
        ge=1,
        le=16,
        description="Maximum concurrent container builds",
    )
    isolate_workspaces: bool = Field(
        default=False,
        description="Copy the source tree per entry even for sequential runs",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    build_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for a single container build (unlimited if not set)",
    )
    provision_timeout: int = Field(
        default=600,
        ge=10,
        description="Timeout for emulation registration",
    )
    publish_timeout: int = Field(
        default=1800,
        ge=10,
        description="Timeout for bundle uploads",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The publish token is masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    if settings.publish_token:
        settings = settings.model_copy(update={"publish_token": "***"})
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
