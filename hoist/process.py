"""
Child processes wired to hoist streams.

``spawn()`` starts the process synchronously (so a bad executable fails at
the call site) and then attaches one internal task per piped stdio channel:

- stdin:  a writable Stream drained into the OS pipe
- stdout/stderr: the OS pipe read into readable Streams

Process exit is observed by a daemon watcher thread that reaps the child
whether or not anybody calls ``wait()``.
"""

from __future__ import annotations

import asyncio
import logging
import signal as signals
import subprocess
import threading
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any, Optional, Union

from hoist.config import get_config
from hoist.diagnostics import report
from hoist.errors import (
    KillAfterTerminationError,
    ProcessError,
    ShellCommandError,
    SpawnError,
    StreamTransportError,
)
from hoist.scheduler import Future, get_scheduler, suspend
from hoist.stream import Chunk, Stream, read_all

logger = logging.getLogger(__name__)

TIMED_OUT = "timed out"


class StdioMode(str, Enum):
    PIPE = "pipe"
    INHERIT = "inherit"
    IGNORE = "ignore"


_POPEN_STDIO = {
    StdioMode.PIPE: subprocess.PIPE,
    StdioMode.INHERIT: None,
    StdioMode.IGNORE: subprocess.DEVNULL,
}


def _parse_mode(option: str, value: Union[StdioMode, str]) -> StdioMode:
    if isinstance(value, StdioMode):
        return value
    try:
        return StdioMode(str(value).lower())
    except ValueError:
        report(
            "fatal: invalid value '${1}' for option ${2} (expected pipe, inherit or ignore)",
            value,
            option,
        )
        raise


@dataclass(frozen=True, slots=True)
class ProcessOptions:
    """Immutable description of a child process to start."""

    file: str
    args: tuple[str, ...] = ()
    stdin: StdioMode = StdioMode.PIPE
    stdout: StdioMode = StdioMode.PIPE
    stderr: StdioMode = StdioMode.PIPE
    cwd: Optional[str] = None
    env: Optional[dict[str, str]] = None
    capacity: Optional[int] = None

    @classmethod
    def build(
        cls,
        file: str,
        *args: Any,
        stdin: Union[StdioMode, str] = StdioMode.PIPE,
        stdout: Union[StdioMode, str] = StdioMode.PIPE,
        stderr: Union[StdioMode, str] = StdioMode.PIPE,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        capacity: Optional[int] = None,
    ) -> ProcessOptions:
        return cls(
            file=str(file),
            args=tuple(str(a) for a in args),
            stdin=_parse_mode("stdin", stdin),
            stdout=_parse_mode("stdout", stdout),
            stderr=_parse_mode("stderr", stderr),
            cwd=None if cwd is None else str(cwd),
            env=None if env is None else dict(env),
            capacity=capacity,
        )

    @property
    def argv(self) -> list[str]:
        return [self.file, *self.args]


def _watch_exit(popen: subprocess.Popen, loop: asyncio.AbstractEventLoop, callback) -> None:
    returncode = popen.wait()
    try:
        loop.call_soon_threadsafe(callback, returncode)
    except RuntimeError:
        # loop already closed; the child has been reaped regardless
        pass


def _dispose(popen: subprocess.Popen) -> None:
    for pipe in (popen.stdin, popen.stdout, popen.stderr):
        if pipe is not None and not pipe.closed:
            pipe.close()
    if popen.poll() is None:
        logger.debug(f"Process {popen.pid} still running after its handle was released")


class ProcessHandle:
    """
    A spawned child process and its stdio streams.

    ``status`` is the exit code and ``signal`` the terminating signal (0 on a
    normal exit); both stay None until termination has been observed.
    """

    def __init__(self, popen: subprocess.Popen, options: ProcessOptions):
        scheduler = get_scheduler()
        capacity = options.capacity or get_config().stream_capacity
        self.options = options
        self.pid: int = popen.pid
        self.status: Optional[int] = None
        self.signal: Optional[int] = None
        self.stdin: Optional[Stream] = None
        self.stdout: Optional[Stream] = None
        self.stderr: Optional[Stream] = None
        self._popen = popen
        self._drained = False
        self._exit_waiters: list[asyncio.Future] = []
        self._pumps: list[Future[None]] = []

        if popen.stdin is not None:
            self.stdin = Stream(capacity, name=f"pid{self.pid}:stdin")
            scheduler.spawn(self._pump_input, popen.stdin, self.stdin)
        for name, pipe in (("stdout", popen.stdout), ("stderr", popen.stderr)):
            if pipe is not None:
                stream = Stream(capacity, name=f"pid{self.pid}:{name}")
                setattr(self, name, stream)
                self._pumps.append(scheduler.spawn(self._pump_output, pipe, stream))

        threading.Thread(
            target=_watch_exit,
            args=(popen, scheduler.loop, self._on_exit),
            name=f"hoist-wait-{self.pid}",
            daemon=True,
        ).start()
        weakref.finalize(self, _dispose, popen)

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} file={self.options.file!r} status={self.status} signal={self.signal}>"

    @classmethod
    def spawn(cls, options: ProcessOptions) -> ProcessHandle:
        """Start a process; raises SpawnError if it cannot be started."""
        get_scheduler()  # fail before forking when there is no running loop
        try:
            popen = subprocess.Popen(
                options.argv,
                stdin=_POPEN_STDIO[options.stdin],
                stdout=_POPEN_STDIO[options.stdout],
                stderr=_POPEN_STDIO[options.stderr],
                cwd=options.cwd,
                env=options.env,
            )
        except (OSError, ValueError) as e:
            reason = getattr(e, "strerror", None) or str(e)
            raise SpawnError(
                f"cannot spawn '{options.file}': {reason}", file=options.file
            ) from e
        logger.debug(f"Spawned {options.argv} as pid {popen.pid}")
        return cls(popen, options)

    @property
    def terminated(self) -> bool:
        return self.status is not None or self.signal is not None

    @property
    def returncode(self) -> Optional[int]:
        """Exit status in the subprocess convention (negative signal number)."""
        if not self.terminated:
            return None
        return -self.signal if self.signal else self.status

    # -- stdio pumps --------------------------------------------------------

    async def _pump_input(self, pipe: IO[bytes], stream: Stream) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.connect_write_pipe(
                asyncio.streams.FlowControlMixin, pipe
            )
        except OSError as e:
            stream.post_error(
                StreamTransportError(f"cannot attach stdin: {e}", source=stream.name, pid=self.pid)
            )
            return
        writer = asyncio.StreamWriter(transport, protocol, None, loop)
        try:
            while True:
                data = await stream.read()
                if data is None:
                    break
                writer.write(data)
                await suspend(writer.drain(), "pipe-write")
        except (BrokenPipeError, ConnectionResetError) as e:
            stream.post_error(
                StreamTransportError(
                    f"process stopped reading its stdin: {e}", source=stream.name, pid=self.pid
                )
            )
        except Exception as e:
            # the producer failed; the child sees EOF on its stdin
            logger.debug(f"Stdin of pid {self.pid} closed with error: {e!r}")
        finally:
            transport.close()

    async def _pump_output(self, pipe: IO[bytes], stream: Stream) -> None:
        loop = asyncio.get_running_loop()
        chunk_size = get_config().read_chunk_size
        reader = asyncio.StreamReader(limit=chunk_size, loop=loop)
        transport = None
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader, loop=loop), pipe
            )
            while True:
                data = await suspend(reader.read(chunk_size), "pipe-read")
                if not data:
                    break
                await stream.write(data)
            if not stream.ended:
                await stream.write()
        except OSError as e:
            stream.post_error(
                StreamTransportError(f"cannot read from pipe: {e}", source=stream.name, pid=self.pid)
            )
        except Exception as e:
            stream.post_error(e)
        finally:
            if transport is not None:
                transport.close()

    # -- lifecycle ----------------------------------------------------------

    def _on_exit(self, returncode: int) -> None:
        if returncode < 0:
            self.status, self.signal = 0, -returncode
        else:
            self.status, self.signal = returncode, 0
        logger.debug(f"Process {self.pid} exited with returncode {returncode}")
        get_scheduler().spawn(self._finish)

    async def _finish(self) -> None:
        # output is complete only once the pipes hit EOF
        loop = get_scheduler().loop
        for pump in self._pumps:
            if not pump.done():
                drained = loop.create_future()
                pump.add_done_callback(
                    lambda _, w=drained: w.done() or w.set_result(None)
                )
                await suspend(drained, "process-output")
        self._drained = True
        waiters, self._exit_waiters = self._exit_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result((self.status, self.signal))

    def kill(self, sig: int = signals.SIGTERM) -> None:
        """Send ``sig`` (SIGTERM by default) to the running process."""
        # the watcher thread may have reaped the child before _on_exit ran
        if self.terminated or self._popen.returncode is not None:
            raise KillAfterTerminationError(
                "process:kill() called after process termination", pid=self.pid
            )
        self._popen.send_signal(sig)

    async def wait(
        self, timeout_ms: Optional[float] = None
    ) -> tuple[Union[int, bool], Union[int, str]]:
        """
        Wait for the process to terminate and return ``(status, signal)``.

        Without a timeout this also waits until stdout and stderr have been
        transferred into their streams. If ``timeout_ms`` elapses while the
        process is still running, returns ``(False, "timed out")`` and leaves
        it running; a process that already exited reports its status even if
        its output has not been consumed yet.
        """
        if self._drained:
            return self.status, self.signal  # type: ignore[return-value]
        scheduler = get_scheduler()
        waiter = scheduler.loop.create_future()
        self._exit_waiters.append(waiter)
        timer = None
        if timeout_ms is not None:

            def _time_out() -> None:
                if waiter.done():
                    return
                if self.terminated:
                    waiter.set_result((self.status, self.signal))
                else:
                    waiter.set_result((False, TIMED_OUT))

            timer = scheduler.call_later(timeout_ms, _time_out)
        try:
            return await suspend(waiter, "process-exit")
        finally:
            if timer is not None:
                timer.cancel()
            if waiter in self._exit_waiters:
                self._exit_waiters.remove(waiter)

    # -- stream delegation --------------------------------------------------

    def _require(self, name: str) -> Stream:
        stream = getattr(self, name)
        if stream is None:
            raise ProcessError(f"{name} of this process is not piped", pid=self.pid)
        return stream

    async def write(self, chunk: Optional[Chunk] = None) -> None:
        """Write to stdin; ``write()`` with no chunk closes it."""
        await self._require("stdin").write(chunk)

    async def read(self) -> Optional[bytes]:
        return await self._require("stdout").read()

    def try_read(self) -> Optional[bytes]:
        return self._require("stdout").try_read()

    def pipe(self, other: ProcessHandle, keep_open: bool = False) -> ProcessHandle:
        """Feed this process's stdout into ``other``'s stdin."""
        self._require("stdout").pipe(other._require("stdin"), keep_open)
        return other


def spawn(file: str, *args: Any, **options: Any) -> ProcessHandle:
    """Build ProcessOptions from the arguments and start the process."""
    return ProcessHandle.spawn(ProcessOptions.build(file, *args, **options))


async def _run_shell(command: str) -> tuple[str, str, int, int]:
    scheduler = get_scheduler()
    process = spawn("/bin/sh", "-c", command, stdin=StdioMode.IGNORE)
    output = scheduler.spawn(read_all, process.stdout)
    errors = scheduler.spawn(read_all, process.stderr)
    status, sig = await process.wait()
    out, err = await scheduler.wait_all([output, errors])
    return out.decode("utf-8", "replace"), err.decode("utf-8", "replace"), status, sig


def _failure_message(status: int, sig: int, err: str) -> str:
    message = f"shell command failed with status {status}"
    if sig:
        message += f" (signal {sig})"
    if err.strip():
        message += f": {err.strip()}"
    return message


async def try_sh(command: str) -> tuple[Optional[str], str]:
    """
    Run ``command`` through ``/bin/sh``.

    Returns ``(stdout, stderr)`` on success and ``(None, message)`` on failure.
    """
    out, err, status, sig = await _run_shell(command)
    if status != 0 or sig != 0:
        return None, _failure_message(status, sig, err)
    return out, err


async def sh(command: str) -> tuple[str, str]:
    """Run ``command`` through ``/bin/sh``; raises ShellCommandError on failure."""
    out, err, status, sig = await _run_shell(command)
    if status != 0 or sig != 0:
        raise ShellCommandError(
            _failure_message(status, sig, err),
            command=command,
            status=status,
            signal=sig,
            stderr=err,
        )
    return out, err
