"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from pydantic import SecretStr

from shipline.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.workspace_dir == (
            Path.home() / ".cache" / "shipline" / "workspaces"
        )
        assert settings.logs_dir == (
            Path.home() / ".local" / "share" / "shipline" / "logs"
        )
        assert "sqlite" in settings.db_url
        assert settings.log_level == "INFO"
        assert settings.container_engine == "docker"
        assert settings.build_attempts == 1
        assert settings.publish_image_attempts == 3
        assert settings.manifest_push_attempts == 3

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "SHIPLINE_LOG_LEVEL": "DEBUG",
                "SHIPLINE_CONTAINER_ENGINE": "podman",
                "SHIPLINE_CHECKOUT_ATTEMPTS": "5",
                "SHIPLINE_GIT_TOKEN": "s3cret",
            },
        ):
            settings = Settings()

        assert settings.log_level == "DEBUG"
        assert settings.container_engine == "podman"
        assert settings.checkout_attempts == 5
        assert isinstance(settings.git_token, SecretStr)
        assert settings.git_token.get_secret_value() == "s3cret"

    def test_get_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_returns_valid_json(self) -> None:
        data = json.loads(print_settings_json(Settings()))
        assert "db_url" in data
        assert "workspace_dir" in data
        assert "retry_base_delay" in data

    def test_secrets_masked(self) -> None:
        """Secret handles should never be rendered."""
        settings = Settings(
            registry_password=SecretStr("hunter2"), git_token=SecretStr("tok")
        )
        output = print_settings_json(settings)

        assert "hunter2" not in output
        assert "tok\"" not in output
        assert "**********" in output
