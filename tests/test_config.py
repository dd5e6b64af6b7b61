"""
Tests for configuration loading.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from conduit.config import (
    ConduitConfig,
    LogLevel,
    get_config,
    reset_config,
    set_config,
)


@pytest.fixture(autouse=True)
def clean_global_config():
    reset_config()
    yield
    reset_config()


class TestConduitConfig:
    """Tests for ConduitConfig."""

    def test_defaults(self, monkeypatch):
        """Test default values."""
        monkeypatch.delenv("CONDUIT_STORE_PATH", raising=False)
        config = ConduitConfig()

        assert config.log_level == LogLevel.INFO
        assert config.max_concurrent_executions == 100
        assert config.internal_error_max_attempts == 2
        assert config.resume_interrupted is False
        assert config.store_path is None

    def test_environment_override(self, monkeypatch):
        """Test CONDUIT_ prefixed variables."""
        monkeypatch.setenv("CONDUIT_MAX_CONCURRENT_EXECUTIONS", "7")
        monkeypatch.setenv("CONDUIT_LOG_LEVEL", "debug")
        monkeypatch.setenv("CONDUIT_STORE_PATH", "/tmp/conduit-executions")

        config = ConduitConfig()

        assert config.max_concurrent_executions == 7
        assert config.log_level == LogLevel.DEBUG
        assert config.store_path == Path("/tmp/conduit-executions")

    def test_empty_store_path_means_memory(self):
        """Test an empty store path disables persistence."""
        assert ConduitConfig(store_path="").store_path is None

    def test_validation(self):
        """Test invalid limits are rejected."""
        with pytest.raises(ValidationError):
            ConduitConfig(max_concurrent_executions=0)
        with pytest.raises(ValidationError):
            ConduitConfig(schedule_poll_interval_seconds=0)

    def test_file_round_trip(self, tmp_path):
        """Test saving and loading a config file."""
        path = tmp_path / "conf" / "conduit.json"
        ConduitConfig(max_concurrent_executions=3, log_format="console").to_file(path)

        loaded = ConduitConfig.from_file(path)

        assert loaded.max_concurrent_executions == 3
        assert loaded.log_format == "console"

    def test_missing_file(self, tmp_path):
        """Test loading a config file that does not exist."""
        with pytest.raises(FileNotFoundError):
            ConduitConfig.from_file(tmp_path / "missing.json")


class TestGlobalConfig:
    """Tests for the global configuration instance."""

    def test_lazy_instance(self):
        """Test get_config returns one shared instance."""
        assert get_config() is get_config()

    def test_set_and_reset(self):
        """Test replacing and resetting the instance."""
        custom = ConduitConfig(max_concurrent_executions=5)
        set_config(custom)

        assert get_config() is custom

        reset_config()
        assert get_config() is not custom
