import io

import pytest
from rich.console import Console

from hoist.config import get_config, set_config
from hoist.diagnostics import Reporter


@pytest.fixture(autouse=True)
def reset_config():
    """Every test starts from the environment-derived configuration."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def reporter():
    """A Reporter that renders into a buffer instead of stderr."""
    buffer = io.StringIO()
    return Reporter(console=Console(file=buffer, force_terminal=False, width=200))


@pytest.fixture
def python():
    """Interpreter used for child processes in tests."""
    return get_config().python_executable
