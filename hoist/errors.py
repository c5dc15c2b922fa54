"""
Error hierarchy for hoist.

Design:
- All errors inherit from HoistError
- Errors knowable at call time are raised at the call site
- Errors discovered while a task is suspended travel through a Stream's
  error slot or a Future's rejection
- Include context for debugging
"""

from __future__ import annotations

from typing import Any


class HoistError(Exception):
    """Base class for all hoist errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} ({ctx_str})"
        return self.message


class ConfigurationError(HoistError):
    """Invalid runtime configuration."""

    pass


class DiagnosticError(HoistError):
    """A fatal diagnostic was reported; the run must stop."""

    def __init__(self, message: str, *, level: str = "fatal", **context: Any):
        super().__init__(message, **context)
        self.level = level


class FutureError(HoistError):
    """A Future was resolved or rejected more than once."""

    pass


class StreamError(HoistError):
    """Error raised by a stream operation."""

    pass


class WriteAfterEndError(StreamError):
    """write() was called on a stream that already ended."""

    def __init__(self, message: str = "write after end", *, stream: str | None = None, **context: Any):
        super().__init__(message, stream=stream, **context)
        self.stream = stream


class ConcurrentReadError(StreamError):
    """A second blocking reader tried to read from a stream."""

    def __init__(self, message: str, *, stream: str | None = None, **context: Any):
        super().__init__(message, stream=stream, **context)
        self.stream = stream


class StreamTransportError(StreamError):
    """Asynchronous I/O failure delivered through a stream's error slot."""

    def __init__(
        self,
        message: str,
        *,
        source: str | None = None,
        **context: Any,
    ):
        super().__init__(message, source=source, **context)
        self.source = source


class ProcessError(HoistError):
    """Error with a child process handle."""

    def __init__(self, message: str, *, pid: int | None = None, **context: Any):
        super().__init__(message, pid=pid, **context)
        self.pid = pid


class SpawnError(ProcessError):
    """The executable could not be found or started."""

    def __init__(self, message: str, *, file: str | None = None, **context: Any):
        super().__init__(message, file=file, **context)
        self.file = file


class KillAfterTerminationError(ProcessError):
    """kill() was called on a process whose termination was already observed."""

    pass


class ShellCommandError(ProcessError):
    """A shell command exited with a non-zero status or a signal."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        status: int | None = None,
        signal: int | None = None,
        stderr: str | None = None,
        **context: Any,
    ):
        super().__init__(message, command=command, status=status, signal=signal, **context)
        self.command = command
        self.status = status
        self.signal = signal
        self.stderr = stderr


class FetchError(HoistError):
    """Error starting a network fetch."""

    def __init__(self, message: str, *, url: str | None = None, **context: Any):
        super().__init__(message, url=url, **context)
        self.url = url


class MalformedURLError(FetchError):
    """The URL is syntactically invalid."""

    pass


class UnsupportedProtocolError(FetchError):
    """The URL scheme is not supported."""

    def __init__(self, message: str, *, url: str | None = None, scheme: str | None = None, **context: Any):
        super().__init__(message, url=url, scheme=scheme, **context)
        self.scheme = scheme


class UnresolvedHostError(StreamTransportError, FetchError):
    """The host name of a fetched URL could not be resolved."""

    def __init__(self, message: str, *, url: str | None = None, host: str | None = None, **context: Any):
        HoistError.__init__(self, message, url=url, host=host, **context)
        self.source = url
        self.url = url
        self.host = host
