"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from crossbuild.config import Settings, get_settings, print_settings_json


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings()

        assert settings.work_dir == Path.home() / ".cache" / "crossbuild" / "work"
        assert (
            settings.output_dir
            == Path.home() / ".local" / "share" / "crossbuild" / "bundles"
        )
        assert settings.publish_url is None
        assert settings.container_runtime == "docker"
        assert settings.emulation_mode == "auto"
        assert settings.emulation_platforms == "all"
        assert settings.log_level == "INFO"
        assert settings.max_concurrent_builds == 1

    def test_no_build_timeout_by_default(self) -> None:
        """Long cross-compilation must not be killed unless configured."""
        assert Settings().build_timeout is None

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "CROSSBUILD_EMULATION_MODE": "never",
                "CROSSBUILD_LOG_LEVEL": "DEBUG",
                "CROSSBUILD_MAX_CONCURRENT_BUILDS": "4",
                "CROSSBUILD_BUILD_TIMEOUT": "7200",
            },
        ):
            settings = Settings()
            assert settings.emulation_mode == "never"
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 4
            assert settings.build_timeout == 7200

    def test_output_dir_from_env(self) -> None:
        """Output dir should be configurable via env."""
        with patch.dict(os.environ, {"CROSSBUILD_OUTPUT_DIR": "/tmp/bundles"}):
            settings = Settings()
            assert settings.output_dir == Path("/tmp/bundles")

    def test_invalid_emulation_mode(self) -> None:
        """Unknown emulation modes should be rejected."""
        with pytest.raises(ValidationError):
            Settings(emulation_mode="sometimes")

    def test_concurrency_bounds(self) -> None:
        """max_concurrent_builds must be at least 1."""
        with pytest.raises(ValidationError):
            Settings(max_concurrent_builds=0)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "work_dir" in parsed
        assert "output_dir" in parsed
        assert "emulation_mode" in parsed
        assert "build_timeout" in parsed

    def test_token_is_masked(self) -> None:
        """The publish token should never be printed."""
        settings = Settings(publish_token="s3cret")
        output = print_settings_json(settings)

        assert "s3cret" not in output
        assert json.loads(output)["publish_token"] == "***"

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "work_dir" in parsed
