# backend/tests/test_volumetric_settings.py

"""
Unit tests for environment-driven settings
"""

import logging
import pytest
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import volumetric_settings
from volumetric_settings import (
    DEFAULT_PRECISION,
    DEFAULT_LOG_LEVEL,
    LOG_FORMAT,
    configure_logging,
    get_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Clear settings env vars and the settings cache around each test"""
    monkeypatch.delenv("VOLUMETRIC_DEFAULT_PRECISION", raising=False)
    monkeypatch.delenv("VOLUMETRIC_LOG_LEVEL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    """Test settings resolution"""

    def test_defaults(self):
        settings = get_settings()

        assert settings.default_precision == DEFAULT_PRECISION
        assert settings.log_level == DEFAULT_LOG_LEVEL

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("VOLUMETRIC_DEFAULT_PRECISION", "6")
        monkeypatch.setenv("VOLUMETRIC_LOG_LEVEL", "debug")

        settings = get_settings()

        assert settings.default_precision == 6
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("raw", ["abc", "-1", "1.5", "  "])
    def test_invalid_precision_falls_back(self, monkeypatch, raw):
        monkeypatch.setenv("VOLUMETRIC_DEFAULT_PRECISION", raw)

        assert get_settings().default_precision == DEFAULT_PRECISION

    def test_invalid_log_level_falls_back(self, monkeypatch, caplog):
        monkeypatch.setenv("VOLUMETRIC_LOG_LEVEL", "LOUD")

        with caplog.at_level(logging.WARNING, logger="volumetric_settings"):
            settings = get_settings()

        assert settings.log_level == DEFAULT_LOG_LEVEL
        assert "VOLUMETRIC_LOG_LEVEL" in caplog.text

    def test_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("VOLUMETRIC_DEFAULT_PRECISION", "7")

        assert get_settings() is first


class TestConfigureLogging:
    """Test logging setup"""

    def test_uses_configured_level(self, monkeypatch):
        calls = []
        monkeypatch.setattr(volumetric_settings.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        monkeypatch.setenv("VOLUMETRIC_LOG_LEVEL", "WARNING")

        configure_logging()

        assert calls == [{"level": "WARNING", "format": LOG_FORMAT}]

    def test_explicit_level_wins(self, monkeypatch):
        calls = []
        monkeypatch.setattr(volumetric_settings.logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

        configure_logging("DEBUG")

        assert calls[0]["level"] == "DEBUG"
