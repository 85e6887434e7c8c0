"""Tests for configuration loading."""

import pytest
from pydantic import ValidationError

from feedsync.config import create_example_config, load_settings
from feedsync.models import ManualOverridePolicy

from conftest import TestSettings


def test_defaults(tmp_path):
    """Test default settings derived from the data directory."""
    settings = TestSettings(data_dir=str(tmp_path))

    assert settings.database_url == f"sqlite:///{tmp_path}/feedsync.db"
    assert settings.log_level == "INFO"
    assert settings.request_timeout_seconds == 30
    assert settings.sync_lock_ttl_seconds == 300
    assert settings.sync_config.grace_hours == 6


def test_log_level_normalized(tmp_path):
    settings = TestSettings(data_dir=str(tmp_path), log_level="debug")

    assert settings.log_level == "DEBUG"


def test_invalid_log_level(tmp_path):
    with pytest.raises(ValidationError):
        TestSettings(data_dir=str(tmp_path), log_level="LOUD")


def test_nested_environment_variables(tmp_path, monkeypatch):
    """Test SYNC_CONFIG__* variables reach the sync configuration."""
    monkeypatch.setenv("SYNC_CONFIG__GRACE_HOURS", "12")
    monkeypatch.setenv("SYNC_CONFIG__MANUAL_OVERRIDE_POLICY", "time_windowed")
    monkeypatch.setenv("FETCH_RETRY_ATTEMPTS", "5")

    settings = TestSettings(data_dir=str(tmp_path))

    assert settings.sync_config.grace_hours == 12
    assert settings.sync_config.manual_override_policy == ManualOverridePolicy.TIME_WINDOWED
    assert settings.fetch_retry_attempts == 5


def test_timeout_bounds(tmp_path):
    with pytest.raises(ValidationError):
        TestSettings(data_dir=str(tmp_path), request_timeout_seconds=1)


def test_example_config_is_loadable(tmp_path, monkeypatch):
    """Test that the generated example file loads as settings."""
    path = tmp_path / "feedsync.env"
    create_example_config(path)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))

    settings = load_settings(str(path))

    assert "SYNC_CONFIG__GRACE_HOURS=6" in path.read_text()
    assert settings.sync_config.target_timezone == "Europe/Copenhagen"
    assert settings.sync_config.max_miss_count == 3
    assert (tmp_path / "data").is_dir()
