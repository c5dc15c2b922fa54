"""
Tests for diagnostic reporting.
"""

import logging

import pytest
import structlog

from hoist.config import RuntimeConfig, set_config
from hoist.diagnostics import Style, expand, report
from hoist.errors import DiagnosticError
from hoist.logging_utils import ROOT_LOGGER, setup_logging


class TestExpand:
    """Tests for ${n} placeholder expansion."""

    def test_positional_values(self):
        assert expand("copy ${1} to ${2}", "a.txt", "b/") == "copy a.txt to b/"

    def test_repeated_and_unknown_placeholders(self):
        assert expand("${1}${1} ${3}", "x") == "xx ${3}"

    def test_no_placeholders(self):
        assert expand("plain text", 1, 2) == "plain text"


class TestReporter:
    """Tests for Reporter."""

    def test_kind_prefix(self, reporter):
        diagnostic = reporter.create("warning: unused argument '${1}'", "--fast")
        assert diagnostic.kind == "warning"
        assert diagnostic.level == "warning"
        assert diagnostic.message == "unused argument '--fast'"

    def test_default_kind(self, reporter):
        diagnostic = reporter.create("something broke")
        assert diagnostic.kind == "error"
        assert diagnostic.message == "something broke"

    def test_unknown_prefix_is_part_of_message(self, reporter):
        diagnostic = reporter.create("http: not a kind")
        assert diagnostic.kind == "error"
        assert diagnostic.message == "http: not a kind"

    def test_report_renders_and_counts(self, reporter):
        reporter.report("warning: careful with ${1}", "that")
        reporter.report("note: fyi")
        output = reporter.console.file.getvalue()
        assert "warning: careful with that" in output
        assert "note: fyi" in output
        assert reporter.counts == {"warning": 1, "note": 1}

    def test_fatal_raises(self, reporter):
        with pytest.raises(DiagnosticError, match="no such release '9.9'") as exc_info:
            reporter.report("fatal: no such release '${1}'", "9.9")
        assert exc_info.value.level == "fatal"
        assert reporter.counts["fatal"] == 1

    def test_custom_kind(self, reporter):
        reporter.define("cli_error", "fatal")
        with pytest.raises(DiagnosticError):
            reporter.report("cli_error: unknown option '${1}'", "-x")

    def test_custom_style_prefix(self, reporter):
        reporter.define("hint", "note", Style(prefix="tip", color="green"))
        reporter.report("hint: try ${1}", "--help")
        assert "tip: try --help" in reporter.console.file.getvalue()

    def test_ignored_kind_is_silent(self, reporter):
        reporter.define("noise", "ignored")
        reporter.report("noise: nothing to see")
        assert reporter.console.file.getvalue() == ""
        assert reporter.counts == {}

    def test_define_unknown_level(self, reporter):
        with pytest.raises(ValueError):
            reporter.define("odd", "catastrophic")

    def test_program_name_from_config(self, reporter):
        set_config(RuntimeConfig(exe_name="lift"))
        reporter.report("warning: careful")
        assert "lift: warning: careful" in reporter.console.file.getvalue()

    def test_explicit_program_name(self, reporter):
        reporter.program = "build"
        reporter.report("note: done")
        assert "build: note: done" in reporter.console.file.getvalue()

    def test_report_after_logging_setup(self, reporter):
        setup_logging("DEBUG", force_colors=False)
        try:
            reporter.report("remark: verbose ${1}", "detail")
            with pytest.raises(DiagnosticError):
                reporter.report("fatal: stop")
        finally:
            root = logging.getLogger(ROOT_LOGGER)
            root.handlers.clear()
            root.setLevel(logging.NOTSET)
            root.propagate = True
            structlog.reset_defaults()
        assert reporter.counts == {"remark": 1, "fatal": 1}


class TestModuleReport:
    """Tests for the process-wide report()."""

    def test_fatal_through_module_report(self):
        with pytest.raises(DiagnosticError, match="unknown option '-x'"):
            report("fatal: unknown option '${1}'", "-x")
