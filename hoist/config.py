"""Process-wide runtime settings.

Settings are read-only for the library: the core only looks values up.
A run installs its configuration once with ``set_config()`` (or lets
``get_config()`` build one from the environment on first use).
"""

from __future__ import annotations

import os
import sys
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hoist.errors import ConfigurationError

ENV_PREFIX = "HOIST_"

DEFAULT_STREAM_CAPACITY = 64 * 1024
DEFAULT_READ_CHUNK_SIZE = 16 * 1024
DEFAULT_USER_AGENT = "hoist/0.1 (+https://pypi.org/project/hoist)"


class RuntimeConfig(BaseModel):
    """Pydantic model for runtime configuration."""

    model_config = ConfigDict(frozen=True)

    # executable used when spawning the interpreter itself for sub-tasks
    python_executable: str = Field(default_factory=lambda: sys.executable or "python3")
    exe_name: str = "hoist"
    # streams
    stream_capacity: int = Field(default=DEFAULT_STREAM_CAPACITY, gt=0)
    read_chunk_size: int = Field(default=DEFAULT_READ_CHUNK_SIZE, gt=0)
    # fetch
    fetch_timeout_ms: float = Field(default=300_000.0, gt=0)
    fetch_connect_timeout_ms: float = Field(default=10_000.0, gt=0)
    fetch_max_retries: int = Field(default=0, ge=0)
    user_agent: str = DEFAULT_USER_AGENT
    # logging
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> RuntimeConfig:
        """Load settings from ``HOIST_*`` environment variables."""
        environ = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                values[name] = raw.strip()
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(
                "invalid runtime configuration", errors=_summarize(e)
            ) from e

    def with_overrides(self, **overrides) -> RuntimeConfig:
        """Return a validated copy with some settings replaced."""
        try:
            return type(self)(**{**self.model_dump(), **overrides})
        except ValidationError as e:
            raise ConfigurationError(
                "invalid runtime configuration", errors=_summarize(e)
            ) from e


def _summarize(error: ValidationError) -> list[str]:
    return [
        f"{ENV_PREFIX}{'.'.join(str(p) for p in item['loc']).upper()}: {item['msg']}"
        for item in error.errors()
    ]


_CONFIG: Optional[RuntimeConfig] = None


def get_config() -> RuntimeConfig:
    """Return the installed configuration, loading it from the environment once."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = RuntimeConfig.from_env()
    return _CONFIG


def set_config(config: Optional[RuntimeConfig]) -> None:
    """Install the process-wide configuration (``None`` resets to lazy loading)."""
    global _CONFIG
    _CONFIG = config
