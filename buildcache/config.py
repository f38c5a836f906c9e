"""Configuration settings for buildcache.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_artifacts_dir() -> Path:
    """Return the default artifacts directory (the job's working directory)."""
    return Path.cwd()


def _default_log_dir() -> Path:
    """Return the default build log directory."""
    return Path.cwd() / ".buildcache" / "logs"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDCACHE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # External tools
    nix_bin: str = Field(default="nix", description="nix executable")
    nix_store_bin: str = Field(default="nix-store", description="nix-store executable")
    docker_bin: str = Field(default="docker", description="docker executable")

    # Binary cache
    cache_endpoint: str = Field(
        default="https://nix.computer.surgery/conduit",
        description="Binary cache endpoint; the last path segment is the cache name",
    )
    cache_token_env: str = Field(
        default="ATTIC_TOKEN",
        description="Environment variable holding the cache bearer token",
    )
    publisher_tool_ref: str = Field(
        default="attic",
        description="Installable of the cache client, pushed alongside targets",
    )
    inputs_from: str = Field(
        default=".",
        description="Flake used to resolve the publisher tool reference",
    )

    # Paths
    artifacts_dir: Path = Field(
        default_factory=_default_artifacts_dir,
        description="Directory for hand-off artifacts between pipeline stages",
    )
    log_dir: Path = Field(
        default_factory=_default_log_dir,
        description="Directory for build logs",
    )
    artifact_name: str = Field(
        default="conduit",
        description="Project name used in hand-off file names",
    )
    registries_file: Path | None = Field(
        default=None,
        description="YAML file overriding the default registry targets",
    )

    # Image publishing
    architectures: list[str] = Field(
        default_factory=lambda: ["amd64", "arm64"],
        description="Architectures every manifest list must contain",
    )
    publish_branches: list[str] = Field(
        default_factory=lambda: ["next", "master"],
        description="Branches whose builds publish images (tags always publish)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=7200,
        ge=60,
        description="Timeout for nix build",
    )
    query_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for nix path-info and nix-store queries",
    )
    network_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single cache request",
    )
    push_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for a single registry push",
    )

    # Retries
    max_attempts: int = Field(
        default=4,
        ge=1,
        le=10,
        description="Maximum attempts for retryable operations",
    )
    backoff_base: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff between retries (seconds)",
    )
    backoff_cap: float = Field(
        default=30.0,
        ge=0,
        description="Maximum backoff between retries (seconds)",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
