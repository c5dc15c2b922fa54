"""
Bounded, backpressured, pipeable byte streams.

Key patterns:
- The buffer never holds more than ``capacity`` bytes; writers suspend
  instead (FIFO, with room reserved for each writer that is resumed)
- One blocking reader at a time; reads return everything buffered
- ``pipe()`` forwards writes to downstream streams, so a slow consumer
  throttles the whole chain
- End and error are terminal; buffered data is delivered before the error
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import weakref
from collections import deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional, Union

from hoist.config import get_config
from hoist.errors import (
    ConcurrentReadError,
    StreamError,
    WriteAfterEndError,
)
from hoist.scheduler import get_scheduler, suspend

logger = logging.getLogger(__name__)

Chunk = Union[bytes, bytearray, memoryview, str]

_stream_ids = itertools.count(1)


def _to_bytes(chunk: Chunk) -> bytes:
    if isinstance(chunk, str):
        return chunk.encode("utf-8")
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise TypeError(f"stream chunks must be bytes or str, not {type(chunk).__name__}")


@dataclass
class _PendingWrite:
    size: int
    waiter: asyncio.Future


@dataclass(eq=False)
class PipeLink:
    """Edge from a producer stream to one of its consumers."""

    target: Stream
    keep_open: bool = False
    settled: bool = False
    _source: Optional[weakref.ref] = field(default=None, repr=False)

    @property
    def source(self) -> Optional[Stream]:
        return self._source() if self._source is not None else None


class Stream:
    """
    Bounded FIFO channel of byte chunks with end/error signaling.

    Producers call ``write()``; a single consumer calls ``read()`` or the
    stream is ``pipe()``d into other streams.
    """

    def __init__(self, capacity: Optional[int] = None, name: Optional[str] = None):
        if capacity is None:
            capacity = get_config().stream_capacity
        if capacity <= 0:
            raise ValueError("stream capacity must be positive")
        self.capacity = capacity
        self.name = name or f"stream-{next(_stream_ids)}"
        self.ended = False
        self.error: Optional[BaseException] = None
        self._buffer: deque[bytes] = deque()
        self._size = 0
        self._reserved = 0
        self._reader: Optional[asyncio.Future] = None
        self._writers: deque[_PendingWrite] = deque()
        self._end_waiters: deque[asyncio.Future] = deque()
        self._links: list[PipeLink] = []
        self._upstreams: weakref.WeakSet[Stream] = weakref.WeakSet()
        self._flushing = False

    def __repr__(self) -> str:
        state = "errored" if self.error else "ended" if self.ended else "open"
        return f"<{type(self).__name__} {self.name} {state} {self._size}/{self.capacity}B>"

    @property
    def buffered(self) -> int:
        """Number of bytes currently buffered."""
        return self._size

    @property
    def piped(self) -> bool:
        return bool(self._links)

    @property
    def consumers(self) -> list[Stream]:
        return [link.target for link in self._links]

    @property
    def producers(self) -> list[Stream]:
        return list(self._upstreams)

    # -- writing ------------------------------------------------------------

    async def write(self, chunk: Optional[Chunk] = None) -> None:
        """
        Append a chunk, suspending while the stream is full.

        ``write()`` with no chunk ends the stream.
        """
        self._check_writable()
        if chunk is None:
            self._end()
            return
        data = _to_bytes(chunk)
        for start in range(0, len(data), self.capacity):
            await self._write_piece(data[start:start + self.capacity])

    def _check_writable(self) -> None:
        if self.ended:
            raise WriteAfterEndError(stream=self.name)
        if self.error is not None:
            raise self.error

    async def _write_piece(self, data: bytes) -> None:
        if self._links and not self._buffer and not self._flushing:
            await self._forward(data)
            return
        size = len(data)
        if self._writers or self._size + self._reserved + size > self.capacity:
            await self._wait_for_room(size)
            self._check_writable()
            if self._links and not self._buffer and not self._flushing:
                # piped while waiting: the reserved room goes to the next writer
                self._wake_writers()
                await self._forward(data)
                return
        self._append(data)

    async def _wait_for_room(self, size: int) -> None:
        waiter = asyncio.get_running_loop().create_future()
        pending = _PendingWrite(size, waiter)
        self._writers.append(pending)
        try:
            await suspend(waiter, "stream-write")
        except BaseException:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # room was reserved for us but we are not going to use it
                self._reserved -= size
                self._wake_writers()
            elif pending in self._writers:
                self._writers.remove(pending)
            raise
        self._reserved -= size

    def _append(self, data: bytes) -> None:
        self._buffer.append(data)
        self._size += len(data)
        self._wake_reader()
        if self._links:
            self._start_flush()

    def _wake_reader(self) -> None:
        if self._reader is not None and not self._reader.done():
            self._reader.set_result(None)

    def _wake_writers(self) -> None:
        room = self.capacity - self._size - self._reserved
        while self._writers:
            pending = self._writers[0]
            if pending.waiter.done():
                self._writers.popleft()
                continue
            if pending.size > room:
                break
            self._writers.popleft()
            room -= pending.size
            self._reserved += pending.size
            pending.waiter.set_result(None)

    def _end(self) -> None:
        self.ended = True
        while self._writers:
            pending = self._writers.popleft()
            if not pending.waiter.done():
                pending.waiter.set_exception(WriteAfterEndError(stream=self.name))
        self._wake_reader()
        self._settle_links()
        self._notify_end()

    def post_error(self, error: BaseException) -> None:
        """Record a terminal error; the first one posted wins."""
        if self.error is not None:
            return
        logger.debug(f"Stream {self.name} failed: {error!r}")
        self.error = error
        while self._writers:
            pending = self._writers.popleft()
            if not pending.waiter.done():
                pending.waiter.set_exception(error)
        self._wake_reader()
        self._settle_links()
        self._notify_end()

    # -- reading ------------------------------------------------------------

    def try_read(self) -> Optional[bytes]:
        """
        Return everything buffered without suspending, or None if empty.

        Raises the stream's error once no buffered data is left.
        """
        if self._links:
            raise ConcurrentReadError("cannot read from a piped stream", stream=self.name)
        if self._buffer:
            data = b"".join(self._buffer)
            self._buffer.clear()
            self._size = 0
            self._wake_writers()
            return data
        if self.error is not None:
            raise self.error
        return None

    async def read(self) -> Optional[bytes]:
        """
        Suspend until data is available and return all of it.

        Returns None at end of stream (every time once ended).
        """
        while True:
            data = self.try_read()
            if data is not None:
                return data
            if self.ended:
                return None
            if self._reader is not None:
                raise ConcurrentReadError(
                    "stream already has a blocked reader", stream=self.name
                )
            waiter = asyncio.get_running_loop().create_future()
            self._reader = waiter
            try:
                await suspend(waiter, "stream-read")
            finally:
                if self._reader is waiter:
                    self._reader = None

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self

    async def __anext__(self) -> bytes:
        data = await self.read()
        if data is None:
            raise StopAsyncIteration
        return data

    # -- piping -------------------------------------------------------------

    def pipe(self, other: Stream, keep_open: bool = False) -> Stream:
        """
        Forward everything written to this stream into ``other``.

        Ending this stream ends ``other`` unless ``keep_open`` is set, which
        lets several producers share one consumer. Returns ``other``.
        """
        if other is self or self in other._reachable():
            raise ValueError(f"piping {self.name} into {other.name} would create a cycle")
        if self._reader is not None:
            raise ConcurrentReadError(
                "cannot pipe a stream that has a blocked reader", stream=self.name
            )
        link = PipeLink(target=other, keep_open=keep_open, _source=weakref.ref(self))
        self._links.append(link)
        other._upstreams.add(self)
        if self._buffer:
            self._start_flush()
        else:
            self._wake_writers()
            self._settle_links()
        return other

    def _reachable(self) -> set[Stream]:
        seen: set[Stream] = set()
        stack = [link.target for link in self._links]
        while stack:
            stream = stack.pop()
            if stream not in seen:
                seen.add(stream)
                stack.extend(link.target for link in stream._links)
        return seen

    async def _forward(self, data: bytes) -> None:
        for link in list(self._links):
            if not link.settled:
                await link.target.write(data)

    def _start_flush(self) -> None:
        if not self._flushing:
            self._flushing = True
            get_scheduler().spawn(self._flush)

    async def _flush(self) -> None:
        """Move data buffered before (or while) piping into the consumers."""
        try:
            while self._buffer:
                data = self._buffer.popleft()
                self._size -= len(data)
                self._wake_writers()
                await self._forward(data)
        except Exception as e:
            logger.warning(f"Forwarding from {self.name} failed: {e}")
            self._buffer.clear()
            self._size = 0
            self._flushing = False
            self.post_error(e)
            return
        self._flushing = False
        self._settle_links()
        self._notify_end()

    def _settle_links(self) -> None:
        """Propagate end/error to consumers once nothing is left to forward."""
        if self._buffer or self._flushing:
            return
        if self.error is None and not self.ended:
            return
        for link in self._links:
            if link.settled:
                continue
            link.settled = True
            target = link.target
            if self.error is not None:
                target.post_error(self.error)
            elif not link.keep_open and not target.ended and target.error is None:
                target._end()

    # -- waiting ------------------------------------------------------------

    def _end_reached(self) -> bool:
        if self.error is not None:
            return True
        if not self.ended:
            return False
        return not self._links or (not self._buffer and not self._flushing)

    def _notify_end(self) -> None:
        if not self._end_reached():
            return
        while self._end_waiters:
            waiter = self._end_waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)

    async def wait_end(self) -> None:
        """
        Suspend until the producer ended this stream (and, when piped, all
        of its data was forwarded) or it failed; raises the stream's error.
        """
        while not self._end_reached():
            waiter = asyncio.get_running_loop().create_future()
            self._end_waiters.append(waiter)
            try:
                await suspend(waiter, "stream-end")
            finally:
                if waiter in self._end_waiters:
                    self._end_waiters.remove(waiter)
        if self.error is not None:
            raise self.error

    async def wait_finish(self) -> None:
        """Like ``wait_end()``, then wait for every consumer this stream closes."""
        await self.wait_end()
        for link in list(self._links):
            if not link.keep_open:
                await link.target.wait_finish()


class SinkStream(Stream):
    """
    Terminal stream that hands every chunk to a callback instead of
    buffering it. ``on_close`` runs once, with the error if the stream failed.
    """

    def __init__(
        self,
        on_data: Callable[[bytes], None],
        on_close: Optional[Callable[[Optional[BaseException]], None]] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name=name)
        self._on_data = on_data
        self._on_close = on_close
        self._closed = False

    def _append(self, data: bytes) -> None:
        self._on_data(data)

    def _close(self, error: Optional[BaseException]) -> None:
        if not self._closed:
            self._closed = True
            if self._on_close is not None:
                self._on_close(error)

    def _end(self) -> None:
        self._close(None)
        super()._end()

    def post_error(self, error: BaseException) -> None:
        if self.error is None:
            self._close(error)
        super().post_error(error)

    def pipe(self, other: Stream, keep_open: bool = False) -> Stream:
        raise StreamError("a sink stream cannot be piped", stream=self.name)


def to_list(chunks: list[bytes], name: Optional[str] = None) -> SinkStream:
    """A sink that appends every chunk it receives to ``chunks``."""
    return SinkStream(chunks.append, name=name or "list-sink")


def write_to(path: Union[str, os.PathLike], name: Optional[str] = None) -> SinkStream:
    """A sink that writes every chunk to the file at ``path``."""
    handle = open(path, "wb")

    def _close(error: Optional[BaseException]) -> None:
        handle.close()
        if error is not None:
            logger.warning(f"Writing {path} stopped early: {error}")

    return SinkStream(handle.write, _close, name=name or f"file:{os.fspath(path)}")


def from_iterable(
    chunks: Iterable[Chunk], capacity: Optional[int] = None, name: Optional[str] = None
) -> Stream:
    """A stream fed by a producer task that writes ``chunks`` then ends."""
    stream = Stream(capacity=capacity, name=name)

    async def _produce() -> None:
        try:
            for chunk in chunks:
                await stream.write(chunk)
            await stream.write()
        except Exception as e:
            stream.post_error(e)

    get_scheduler().spawn(_produce)
    return stream


async def read_all(stream: Stream) -> bytes:
    """Read a stream until its end and return the concatenated data."""
    parts = []
    async for data in stream:
        parts.append(data)
    return b"".join(parts)
