"""Configuration settings for shipline.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Secrets (registry password, git token) are carried as ``SecretStr``
handles; they are only revealed at the moment a collaborator call needs
them and are never rendered by ``print_settings_json``.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_state_dir() -> Path:
    """Return the default state directory."""
    return Path.home() / ".local" / "share" / "shipline"


def _default_workspace_dir() -> Path:
    """Return the default root for per-run workspaces."""
    return Path.home() / ".cache" / "shipline" / "workspaces"


def _default_logs_dir() -> Path:
    """Return the default directory for retained run logs."""
    return _default_state_dir() / "logs"


def _default_lock_dir() -> Path:
    """Return the default directory for environment lock files."""
    return _default_state_dir() / "locks"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = _default_state_dir() / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SHIPLINE_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SHIPLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    pipeline_file: Path = Field(
        default=Path("shipline.yaml"),
        description="Pipeline definition file",
    )
    workspace_dir: Path = Field(
        default_factory=_default_workspace_dir,
        description="Root directory for per-run workspaces",
    )
    logs_dir: Path = Field(
        default_factory=_default_logs_dir,
        description="Root directory for retained run logs",
    )
    lock_dir: Path = Field(
        default_factory=_default_lock_dir,
        description="Directory for per-environment lock files",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Collaborators
    container_engine: str = Field(
        default="docker",
        description="Container engine CLI (docker or a compatible binary)",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for the application build command",
    )
    image_build_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for container image builds",
    )
    push_timeout: int = Field(
        default=600,
        ge=1,
        description="Timeout for registry login and push",
    )
    git_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout for git clone, fetch and push",
    )

    # Retry budgets (attempts per stage, including the first)
    checkout_attempts: int = Field(default=3, ge=1, le=10)
    build_attempts: int = Field(default=1, ge=1, le=10)
    publish_image_attempts: int = Field(default=3, ge=1, le=10)
    patch_attempts: int = Field(default=1, ge=1, le=10)
    publish_manifest_attempts: int = Field(default=3, ge=1, le=10)
    manifest_push_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Fetch-patch-push rounds when the manifest remote moved",
    )
    retry_base_delay: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the first retry, in seconds",
    )
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=60.0, ge=0)

    # Secret handles
    registry_username: str | None = Field(
        default=None,
        description="Registry user for login before push",
    )
    registry_password: SecretStr | None = Field(
        default=None,
        description="Registry password or token",
    )
    git_username: str = Field(
        default="x-access-token",
        description="User name paired with git_token for HTTPS remotes",
    )
    git_token: SecretStr | None = Field(
        default=None,
        description="Token for HTTPS git remotes",
    )


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Secret values are masked by pydantic.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
