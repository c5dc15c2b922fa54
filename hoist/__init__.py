"""
hoist - cooperative async runtime for build and task automation.

Tasks run on a single scheduler and talk through bounded byte streams;
child processes and HTTP downloads expose their I/O as those same streams,
so they can be piped into each other with backpressure.

Usage:

    import hoist

    async def main():
        # pipe one process into another
        a = hoist.spawn("printf", "One")
        b = hoist.spawn("cat")
        a.pipe(b)
        print(await hoist.read_all(b.stdout))

        # download a file
        chunks = []
        await hoist.fetch("example.com").pipe(hoist.to_list(chunks)).wait_finish()

        # run things concurrently
        futures = [hoist.spawn_task(hoist.sh, f"echo {n}") for n in range(3)]
        print(await hoist.wait_all(futures))

    hoist.run(main)
"""

# Scheduler
from .scheduler import (
    Future,
    FutureState,
    Scheduler,
    Task,
    TaskState,
    current_task,
    get_scheduler,
    now,
    run,
    sleep,
    spawn_task,
    suspend,
    wait_all,
)

# Streams
from .stream import (
    SinkStream,
    Stream,
    from_iterable,
    read_all,
    to_list,
    write_to,
)

# Processes
from .process import (
    ProcessHandle,
    ProcessOptions,
    StdioMode,
    sh,
    spawn,
    try_sh,
)

# Fetch
from .fetch import FetchOptions, FetchStream, fetch, normalize_url

# Ambient
from .config import RuntimeConfig, get_config, set_config
from .diagnostics import Reporter, get_reporter, report
from .logging_utils import setup_logging

# Error types
from .errors import (
    ConcurrentReadError,
    ConfigurationError,
    DiagnosticError,
    FetchError,
    FutureError,
    HoistError,
    KillAfterTerminationError,
    MalformedURLError,
    ProcessError,
    ShellCommandError,
    SpawnError,
    StreamError,
    StreamTransportError,
    UnresolvedHostError,
    UnsupportedProtocolError,
    WriteAfterEndError,
)

__version__ = "0.1.0"

__all__ = [
    # Scheduler
    "Future",
    "FutureState",
    "Scheduler",
    "Task",
    "TaskState",
    "current_task",
    "get_scheduler",
    "now",
    "run",
    "sleep",
    "spawn_task",
    "suspend",
    "wait_all",
    # Streams
    "SinkStream",
    "Stream",
    "from_iterable",
    "read_all",
    "to_list",
    "write_to",
    # Processes
    "ProcessHandle",
    "ProcessOptions",
    "StdioMode",
    "sh",
    "spawn",
    "try_sh",
    # Fetch
    "FetchOptions",
    "FetchStream",
    "fetch",
    "normalize_url",
    # Ambient
    "RuntimeConfig",
    "get_config",
    "set_config",
    "Reporter",
    "get_reporter",
    "report",
    "setup_logging",
    # Errors
    "ConcurrentReadError",
    "ConfigurationError",
    "DiagnosticError",
    "FetchError",
    "FutureError",
    "HoistError",
    "KillAfterTerminationError",
    "MalformedURLError",
    "ProcessError",
    "ShellCommandError",
    "SpawnError",
    "StreamError",
    "StreamTransportError",
    "UnresolvedHostError",
    "UnsupportedProtocolError",
    "WriteAfterEndError",
]
