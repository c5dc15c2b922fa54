"""
Log output for hoist runs.

Modules log through ``logging.getLogger(__name__)`` (or ``get_logger``) under
the ``hoist`` namespace. ``setup_logging()`` renders that namespace with
structlog on stderr. Every record emitted while a hoist Task is running
carries a ``task=<name>#<id>`` field, which the scheduler binds when the task
starts, so interleaved output from concurrent tasks can be told apart.
"""

import contextvars
import logging
import sys
from typing import Any, Mapping

import structlog
from structlog.typing import EventDict, Processor

from hoist.config import get_config

ROOT_LOGGER = "hoist"


def bind_task(label: str) -> Mapping[str, contextvars.Token[Any]]:
    """Tag log records of the running task; pass the result to ``release_task``."""
    return structlog.contextvars.bind_contextvars(task=label)


def release_task(tokens: Mapping[str, contextvars.Token[Any]]) -> None:
    structlog.contextvars.reset_contextvars(**tokens)


def _short_logger_name(_: Any, __: str, event_dict: EventDict) -> EventDict:
    name = event_dict.get("logger")
    if isinstance(name, str) and name.startswith(ROOT_LOGGER + "."):
        event_dict["logger"] = name[len(ROOT_LOGGER) + 1:]
    return event_dict


def setup_logging(level: str | None = None, force_colors: bool | None = None) -> None:
    """
    Route the ``hoist`` logger namespace to stderr through structlog.

    Args:
        level: DEBUG, INFO, WARNING or ERROR; unknown names mean WARNING.
            Defaults to the configured ``log_level`` (``HOIST_LOG_LEVEL``).
        force_colors: True/False to force colors, None to follow the tty.
    """
    if level is None:
        level = get_config().log_level
    numeric_level = getattr(logging, level.upper(), logging.WARNING)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _short_logger_name,
        structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
    ]

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(
                colors=force_colors if force_colors is not None else sys.stderr.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ],
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger(ROOT_LOGGER)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)
    root.propagate = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """structlog logger for ``name``, placed under the ``hoist`` namespace."""
    if name is None or name == ROOT_LOGGER:
        return structlog.get_logger(ROOT_LOGGER)
    if name.startswith(ROOT_LOGGER + "."):
        return structlog.get_logger(name)
    return structlog.get_logger(f"{ROOT_LOGGER}.{name}")
