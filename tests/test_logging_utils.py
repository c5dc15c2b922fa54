"""
Tests for logging setup.
"""

import logging

import pytest
import structlog

from hoist.config import RuntimeConfig, set_config
from hoist.logging_utils import ROOT_LOGGER, setup_logging
from hoist.scheduler import spawn_task


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger(ROOT_LOGGER)
    root.handlers.clear()
    root.setLevel(logging.NOTSET)
    root.propagate = True
    structlog.reset_defaults()


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_configures_namespace_logger(self):
        setup_logging("DEBUG", force_colors=False)
        root = logging.getLogger(ROOT_LOGGER)
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert root.propagate is False

    def test_repeated_setup_replaces_handler(self):
        setup_logging("INFO")
        setup_logging("WARNING")
        root = logging.getLogger(ROOT_LOGGER)
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING

    def test_unknown_level_falls_back_to_warning(self):
        setup_logging("chatty")
        assert logging.getLogger(ROOT_LOGGER).level == logging.WARNING

    def test_stdlib_records_are_rendered(self, capsys):
        setup_logging("INFO", force_colors=False)
        logging.getLogger("hoist.process").info("process 42 exited")
        assert "process 42 exited" in capsys.readouterr().err

    def test_level_defaults_to_config(self):
        set_config(RuntimeConfig(log_level="ERROR"))
        setup_logging()
        assert logging.getLogger(ROOT_LOGGER).level == logging.ERROR


class TestTaskContext:
    """Log records carry the hoist task that emitted them."""

    @pytest.mark.asyncio
    async def test_records_inside_task_name_the_task(self, capsys):
        setup_logging("INFO", force_colors=False)

        async def announce():
            logging.getLogger("hoist.test").info("inside task")

        await spawn_task(announce)
        err = capsys.readouterr().err
        assert "inside task" in err
        assert "task=" in err
        assert "announce#" in err

    @pytest.mark.asyncio
    async def test_binding_does_not_outlive_task(self, capsys):
        setup_logging("INFO", force_colors=False)
        await spawn_task(lambda: None)
        logging.getLogger("hoist.test").info("outside task")
        err = capsys.readouterr().err
        assert "outside task" in err
        assert "task=" not in err
