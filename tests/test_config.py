"""Tests for environment-driven settings."""

from pathlib import Path

from nga_crawler.config import FIXTURES_PATH, Settings
from nga_crawler.client import BASE_URL, CONNECT_TIMEOUT, REQUEST_TIMEOUT
from nga_crawler.state import DEFAULT_DATABASE_URL


class TestSettings:
    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.base_url == BASE_URL
        assert settings.connect_timeout == CONNECT_TIMEOUT
        assert settings.timeout == REQUEST_TIMEOUT
        assert settings.default_forum_id == 7
        assert settings.fixtures_path == Path(FIXTURES_PATH)

    def test_overrides(self):
        settings = Settings.from_env({
            "NGA_DATABASE_URL": "sqlite:///other.db",
            "NGA_BASE_URL": "https://mirror.test",
            "NGA_CONNECT_TIMEOUT": "2.5",
            "NGA_TIMEOUT": "30",
            "NGA_DEFAULT_FORUM_ID": "-7",
            "NGA_FIXTURES_PATH": "/tmp/fixtures",
        })
        assert settings.database_url == "sqlite:///other.db"
        assert settings.base_url == "https://mirror.test"
        assert settings.connect_timeout == 2.5
        assert settings.timeout == 30.0
        assert settings.fixtures_path == Path("/tmp/fixtures")
        # Non-positive values fall back to the default
        assert settings.default_forum_id == 7

    def test_invalid_number_falls_back(self):
        settings = Settings.from_env({"NGA_TIMEOUT": "soon", "NGA_DEFAULT_FORUM_ID": " "})
        assert settings.timeout == REQUEST_TIMEOUT
        assert settings.default_forum_id == 7
