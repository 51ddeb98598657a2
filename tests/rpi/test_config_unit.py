"""Tests for RPISettings loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from src.rpi.config import RPISettings, get_settings


@pytest.fixture
def required_env(monkeypatch, tmp_path):
    monkeypatch.setenv("RPI_GITHUB_TOKEN", "ghp_test")
    monkeypatch.setenv("RPI_GITHUB_WEBHOOK_SECRET", "secret")
    monkeypatch.setenv("RPI_REPO_PATH", str(tmp_path))
    return tmp_path


class TestSettings:

    def test_defaults(self, required_env):
        settings = get_settings()

        assert settings.trigger_label == "rpi"
        assert settings.bot_handle == "rpi-bot"
        assert settings.base_branch == "main"
        assert settings.artifact_retention_days == 30
        assert settings.agent_timeout_seconds == 3600
        assert settings.database_url is None
        assert settings.port == 8080

    def test_artifact_root_is_inside_repo(self, required_env):
        settings = get_settings()
        assert settings.artifact_root == Path(required_env) / "docs" / "rpi"

    def test_env_overrides(self, required_env, monkeypatch):
        monkeypatch.setenv("RPI_TRIGGER_LABEL", "ai-pipeline")
        monkeypatch.setenv("RPI_ARTIFACT_RETENTION_DAYS", "7")
        monkeypatch.setenv("RPI_DATABASE_URL", "postgresql://rpi:pw@db:5432/rpi")

        settings = get_settings()

        assert settings.trigger_label == "ai-pipeline"
        assert settings.artifact_retention_days == 7
        assert settings.database_url == "postgresql://rpi:pw@db:5432/rpi"

    def test_blank_database_url_means_in_memory(self, required_env, monkeypatch):
        monkeypatch.setenv("RPI_DATABASE_URL", "  ")
        assert get_settings().database_url is None

    def test_missing_token_fails(self, required_env, monkeypatch):
        monkeypatch.delenv("RPI_GITHUB_TOKEN")
        with pytest.raises(ValidationError):
            get_settings()

    @pytest.mark.parametrize(
        "name,value",
        [
            ("RPI_GITHUB_TOKEN", "   "),
            ("RPI_REPO_PATH", "relative/path"),
            ("RPI_ARTIFACT_DIR", "../outside"),
            ("RPI_ARTIFACT_DIR", "/absolute"),
            ("RPI_ARTIFACT_RETENTION_DAYS", "-1"),
            ("RPI_AGENT_TIMEOUT_SECONDS", "0"),
            ("RPI_DATABASE_URL", "mysql://db"),
            ("RPI_PORT", "70000"),
            ("RPI_BOT_HANDLE", " "),
        ],
    )
    def test_invalid_values_fail(self, required_env, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValidationError):
            RPISettings()
