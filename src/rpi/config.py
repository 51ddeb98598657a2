"""Pipeline configuration using pydantic-settings.

This module defines the RPISettings class that reads configuration from
environment variables with the RPI_ prefix (e.g. RPI_GITHUB_TOKEN).
"""

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RPISettings(BaseSettings):
    """RPI pipeline configuration from environment variables.

    Required fields:
    - github_token: GitHub API token for comments, reactions, pull requests
    - github_webhook_secret: Secret for verifying webhook signatures
    - repo_path: Absolute path of the repository working tree
    """

    model_config = SettingsConfigDict(
        env_prefix="RPI_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    github_webhook_secret: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Web host used in artifact links
    github_web_url: str = "https://github.com"

    # Label that starts a pipeline run
    trigger_label: str = "rpi"

    # Login the bot answers to in comments, without "@"
    bot_handle: str = "rpi-bot"

    # -------------------------------------------------------------------------
    # Repository Configuration
    # -------------------------------------------------------------------------
    repo_path: str

    # Artifact root, relative to repo_path
    artifact_dir: str = "docs/rpi"

    base_branch: str = "main"

    # Remote to push run branches to; empty disables pushing
    git_remote: str = "origin"

    # Days a completed run's artifacts are kept before cleanup
    artifact_retention_days: int = 30

    # -------------------------------------------------------------------------
    # Agent Configuration
    # -------------------------------------------------------------------------
    agent_cli_path: str = "/usr/local/bin/rpi-agent"

    agent_timeout_seconds: int = 3600

    # -------------------------------------------------------------------------
    # Database Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; runs are kept in memory when unset
    database_url: Optional[str] = None

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"

    port: int = 8080

    @property
    def artifact_root(self) -> Path:
        """Directory holding one artifact directory per feature id."""
        return Path(self.repo_path) / self.artifact_dir

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token", "github_webhook_secret")
    @classmethod
    def validate_not_empty(cls, v: str, info) -> str:
        if not v or not v.strip():
            raise ValueError(f"{info.field_name} cannot be empty")
        return v

    @field_validator("trigger_label", "bot_handle", "base_branch")
    @classmethod
    def validate_name(cls, v: str, info) -> str:
        v = v.strip()
        if not v:
            raise ValueError(f"{info.field_name} cannot be empty")
        return v

    @field_validator("repo_path")
    @classmethod
    def validate_repo_path(cls, v: str) -> str:
        """Validate that the repository path is absolute."""
        if not Path(v).is_absolute():
            raise ValueError("repo_path must be an absolute path")
        return v

    @field_validator("artifact_dir")
    @classmethod
    def validate_artifact_dir(cls, v: str) -> str:
        """Validate that the artifact directory stays inside the repository."""
        path = Path(v)
        if not v.strip() or path.is_absolute() or ".." in path.parts:
            raise ValueError("artifact_dir must be a relative path inside the repository")
        return v

    @field_validator("artifact_retention_days")
    @classmethod
    def validate_retention_days(cls, v: int) -> int:
        if v < 0:
            raise ValueError("artifact_retention_days cannot be negative")
        return v

    @field_validator("agent_timeout_seconds")
    @classmethod
    def validate_agent_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("agent_timeout_seconds must be at least 1")
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL scheme when one is set."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> RPISettings:
    """Create RPISettings from the environment.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return RPISettings()
