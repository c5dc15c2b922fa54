"""
Diagnostic reporting.

Messages are templates with ``${n}`` positional placeholders (1-based) and an
optional ``kind:`` prefix naming the diagnostic kind::

    report("fatal: no such release '${1}'", version)
    report("warning: unused argument '${1}'", arg)

Each kind maps to a severity level. ``fatal`` diagnostics raise
``DiagnosticError`` and end the run; everything else is logged and rendered
on stderr.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from rich.console import Console
from rich.text import Text

from hoist.config import get_config
from hoist.errors import DiagnosticError
from hoist.logging_utils import get_logger

logger = get_logger(__name__)

SEVERITIES = ("ignored", "remark", "note", "warning", "error", "fatal")

_PLACEHOLDER = re.compile(r"\$\{(\d+)\}")
_KIND_PREFIX = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*):\s*")

_LOG_LEVELS = {
    "remark": logging.DEBUG,
    "note": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def expand(template: str, *values: Any) -> str:
    """Replace ``${n}`` placeholders with the n-th value (unknown ones stay)."""

    def _sub(match: re.Match) -> str:
        index = int(match.group(1))
        if 1 <= index <= len(values):
            return str(values[index - 1])
        return match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


@dataclass(frozen=True, slots=True)
class Style:
    """How a diagnostic kind is rendered."""

    prefix: Optional[str] = None
    color: str = "default"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    kind: str
    level: str
    message: str
    values: tuple[Any, ...] = ()

    def render(self, style: Style, program: Optional[str] = None) -> Text:
        text = Text()
        if program:
            text.append(f"{program}: ", style="bold")
        text.append(f"{style.prefix or self.kind}: ", style=f"bold {style.color}")
        text.append(self.message)
        return text


@dataclass
class Reporter:
    """Maps diagnostic kinds to severities and emits them."""

    levels: dict[str, str] = field(
        default_factory=lambda: {level: level for level in SEVERITIES}
    )
    styles: dict[str, Style] = field(
        default_factory=lambda: {
            "fatal": Style(color="red"),
            "error": Style(color="red"),
            "warning": Style(color="yellow"),
            "note": Style(color="cyan"),
            "remark": Style(color="bright_black"),
        }
    )
    default_kind: str = "error"
    console: Console = field(default_factory=lambda: Console(stderr=True))
    counts: dict[str, int] = field(default_factory=dict)
    # name shown before each rendered diagnostic; defaults to the configured exe_name
    program: Optional[str] = None

    def define(self, kind: str, level: str, style: Optional[Style] = None) -> None:
        """Register a custom diagnostic kind (e.g. ``cli_error`` -> ``fatal``)."""
        if level not in SEVERITIES:
            raise ValueError(f"unknown severity level {level!r}")
        self.levels[kind] = level
        if style is not None:
            self.styles[kind] = style

    def create(self, template: str, *values: Any) -> Diagnostic:
        kind = self.default_kind
        match = _KIND_PREFIX.match(template)
        if match and match.group(1) in self.levels:
            kind = match.group(1)
            template = template[match.end():]
        return Diagnostic(
            kind=kind,
            level=self.levels[kind],
            message=expand(template, *values),
            values=values,
        )

    def report(self, template: str, *values: Any) -> Diagnostic:
        diagnostic = self.create(template, *values)
        level = diagnostic.level
        if level == "ignored":
            return diagnostic
        self.counts[level] = self.counts.get(level, 0) + 1
        logger.log(
            _LOG_LEVELS[level], diagnostic.message, kind=diagnostic.kind, severity=level
        )
        if level == "fatal":
            raise DiagnosticError(diagnostic.message, level=level, kind=diagnostic.kind)
        style = self.styles.get(diagnostic.kind) or self.styles.get(level, Style())
        program = self.program if self.program is not None else get_config().exe_name
        self.console.print(diagnostic.render(style, program))
        return diagnostic


_REPORTER = Reporter()


def get_reporter() -> Reporter:
    return _REPORTER


def report(template: str, *values: Any) -> Diagnostic:
    """Report a diagnostic through the process-wide reporter."""
    return _REPORTER.report(template, *values)
