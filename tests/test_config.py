"""
Tests for runtime configuration.
"""

import sys

import pytest
from pydantic import ValidationError

from hoist.config import RuntimeConfig, get_config, set_config
from hoist.errors import ConfigurationError


class TestRuntimeConfig:
    """Tests for RuntimeConfig."""

    def test_defaults(self):
        config = RuntimeConfig()
        assert config.python_executable == sys.executable
        assert config.stream_capacity == 64 * 1024
        assert config.fetch_max_retries == 0

    def test_from_env(self):
        config = RuntimeConfig.from_env(
            {"HOIST_STREAM_CAPACITY": "128", "HOIST_LOG_LEVEL": "DEBUG", "OTHER": "x"}
        )
        assert config.stream_capacity == 128
        assert config.log_level == "DEBUG"

    def test_from_env_ignores_blank_values(self):
        config = RuntimeConfig.from_env({"HOIST_STREAM_CAPACITY": "  "})
        assert config.stream_capacity == 64 * 1024

    def test_from_env_invalid(self):
        with pytest.raises(ConfigurationError) as exc_info:
            RuntimeConfig.from_env({"HOIST_STREAM_CAPACITY": "0"})
        assert any("HOIST_STREAM_CAPACITY" in e for e in exc_info.value.context["errors"])

    def test_with_overrides(self):
        config = RuntimeConfig().with_overrides(read_chunk_size=10)
        assert config.read_chunk_size == 10
        with pytest.raises(ConfigurationError):
            config.with_overrides(fetch_max_retries=-1)

    def test_frozen(self):
        with pytest.raises(ValidationError):
            RuntimeConfig().stream_capacity = 1


class TestGlobalConfig:
    """Tests for the process-wide configuration."""

    def test_get_config_reads_environment(self, monkeypatch):
        monkeypatch.setenv("HOIST_READ_CHUNK_SIZE", "512")
        assert get_config().read_chunk_size == 512
        # loaded once
        monkeypatch.setenv("HOIST_READ_CHUNK_SIZE", "1024")
        assert get_config().read_chunk_size == 512

    def test_set_config(self):
        config = RuntimeConfig(exe_name="custom")
        set_config(config)
        assert get_config() is config
        set_config(None)
        assert get_config() is not config
