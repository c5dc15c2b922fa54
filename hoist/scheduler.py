"""
Cooperative task scheduler.

Key properties:
1. One loop multiplexes every task; a task only gives up control at a
   suspension point (sleep, future await, stream read/write, process wait)
2. Every suspension goes through ``suspend()``, which records on the current
   Task what it is waiting for
3. Waiters are released FIFO per resource; timers with equal deadlines fire
   in the order they were scheduled
4. Futures settle exactly once and release their observers in arrival order

Usage:

    from hoist.scheduler import Scheduler, sleep, spawn_task, wait_all

    async def build(version):
        await sleep(100)
        return version

    async def main():
        futures = [spawn_task(build, v) for v in ("5.1", "5.2", "5.3")]
        return await wait_all(futures)

    Scheduler().run(main)
"""

from __future__ import annotations

import asyncio
import contextvars
import heapq
import inspect
import itertools
import logging
import time
import weakref
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from hoist.diagnostics import report
from hoist.errors import FutureError
from hoist.logging_utils import bind_task, release_task

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskState(str, Enum):
    READY = "ready"
    RUNNING = "running"
    SUSPENDED = "suspended"
    DONE = "done"
    FAILED = "failed"


class FutureState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


_current_task: contextvars.ContextVar[Optional["Task"]] = contextvars.ContextVar(
    "hoist_current_task", default=None
)


def current_task() -> Optional[Task]:
    """The hoist Task whose code is running, if any."""
    return _current_task.get()


async def suspend(waiter: Awaitable[T], reason: str) -> T:
    """Suspend the calling task until ``waiter`` completes.

    All blocking operations go through here so the current Task can report
    what it is waiting on.
    """
    task = _current_task.get()
    if task is None:
        return await waiter
    task.state = TaskState.SUSPENDED
    task.suspended_on = reason
    try:
        return await waiter
    finally:
        task.state = TaskState.RUNNING
        task.suspended_on = None


class Future(Generic[T]):
    """
    Handle to an eventual outcome, settled exactly once.

    Any number of tasks may ``await`` a Future; they are released in the
    order they started waiting.
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self.state = FutureState.PENDING
        self._value: Optional[T] = None
        self._error: Optional[BaseException] = None
        self._observers: deque[asyncio.Future] = deque()
        self._callbacks: list[Callable[[Future[T]], None]] = []

    def __repr__(self) -> str:
        return f"<Future {self.name or hex(id(self))} {self.state.value}>"

    def done(self) -> bool:
        return self.state is not FutureState.PENDING

    def resolve(self, value: Optional[T] = None) -> None:
        self._settle(FutureState.RESOLVED, value, None)

    def reject(self, error: BaseException) -> None:
        self._settle(FutureState.REJECTED, None, error)

    def _settle(
        self, state: FutureState, value: Optional[T], error: Optional[BaseException]
    ) -> None:
        if self.state is not FutureState.PENDING:
            raise FutureError(
                "future was already settled", future=self.name, state=self.state.value
            )
        self.state = state
        self._value = value
        self._error = error
        while self._observers:
            observer = self._observers.popleft()
            if not observer.done():
                observer.set_result(None)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def add_done_callback(self, callback: Callable[[Future[T]], None]) -> None:
        """Call ``callback(self)`` on settlement (immediately if already settled)."""
        if self.done():
            callback(self)
        else:
            self._callbacks.append(callback)

    def result(self) -> T:
        """Return the value or raise the error; never suspends."""
        if self.state is FutureState.PENDING:
            raise FutureError("future is still pending", future=self.name)
        if self._error is not None:
            raise self._error
        return self._value  # type: ignore[return-value]

    def exception(self) -> Optional[BaseException]:
        if self.state is FutureState.PENDING:
            raise FutureError("future is still pending", future=self.name)
        return self._error

    async def wait(self) -> T:
        if self.state is FutureState.PENDING:
            observer = asyncio.get_running_loop().create_future()
            self._observers.append(observer)
            try:
                await suspend(observer, "future")
            finally:
                if observer in self._observers:
                    self._observers.remove(observer)
        return self.result()

    def __await__(self):
        return self.wait().__await__()


class Task:
    """A cooperatively scheduled unit of execution."""

    _ids = itertools.count(1)

    def __init__(self, fn: Callable[..., Any], args: tuple, kwargs: dict):
        self.id = next(Task._ids)
        self.name = getattr(fn, "__qualname__", None) or repr(fn)
        self.state = TaskState.READY
        self.suspended_on: Optional[str] = None
        self.future: Future[Any] = Future(name=f"{self.name}#{self.id}")
        self._fn = fn
        self._args = args
        self._kwargs = kwargs

    def __repr__(self) -> str:
        detail = f" on {self.suspended_on}" if self.suspended_on else ""
        return f"<Task {self.name}#{self.id} {self.state.value}{detail}>"

    async def run(self) -> None:
        token = _current_task.set(self)
        log_tokens = bind_task(f"{self.name}#{self.id}")
        self.state = TaskState.RUNNING
        try:
            result = self._fn(*self._args, **self._kwargs)
            if inspect.isawaitable(result):
                result = await result
        except asyncio.CancelledError as e:
            self.state = TaskState.FAILED
            self.future.reject(e)
            raise
        except Exception as e:
            self.state = TaskState.FAILED
            logger.debug(f"Task {self.name}#{self.id} failed: {e!r}")
            self.future.reject(e)
        else:
            self.state = TaskState.DONE
            self.future.resolve(result)
        finally:
            _current_task.reset(token)
            release_task(log_tokens)


@dataclass(order=True)
class _Timer:
    deadline: float
    seq: int
    callback: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class SchedulerStats:
    """Runtime statistics for monitoring."""

    spawned: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def live(self) -> int:
        return self.spawned - self.completed - self.failed


_SCHEDULERS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Scheduler]" = (
    weakref.WeakKeyDictionary()
)


class Scheduler:
    """
    Explicit task runtime on top of an asyncio event loop.

    The scheduler owns the task table and the timer queue. It binds to the
    running loop on first use (or to the loop ``run()`` creates).
    """

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: dict[int, Task] = {}
        self._timers: list[_Timer] = []
        self._timer_seq = itertools.count()
        self._timer_handle: Optional[asyncio.TimerHandle] = None
        self.stats = SchedulerStats()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._bind(asyncio.get_running_loop())
        return self._loop  # type: ignore[return-value]

    def _bind(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._timer_handle is not None:
            self._timer_handle.cancel()
        self._loop = loop
        self._timers = []
        self._timer_handle = None
        _SCHEDULERS.setdefault(loop, self)

    @property
    def tasks(self) -> list[Task]:
        """Tasks that have not finished yet."""
        return list(self._tasks.values())

    def now(self) -> float:
        """Monotonic time in milliseconds."""
        if self._loop is not None:
            return self._loop.time() * 1000
        return time.monotonic() * 1000

    def spawn(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        """Schedule ``fn(*args, **kwargs)`` as a new task and return its Future."""
        task = Task(fn, args, kwargs)
        handle = self.loop.create_task(task.run(), name=f"hoist:{task.name}#{task.id}")
        self._tasks[task.id] = task
        self.stats.spawned += 1
        handle.add_done_callback(lambda _: self._finished(task))
        return task.future

    def _finished(self, task: Task) -> None:
        self._tasks.pop(task.id, None)
        if not task.future.done():
            # cancelled before it ever ran
            task.state = TaskState.FAILED
            task.future.reject(asyncio.CancelledError())
        if task.state is TaskState.DONE:
            self.stats.completed += 1
        else:
            self.stats.failed += 1

    # -- timers -------------------------------------------------------------

    def call_later(self, ms: float, callback: Callable[[], None]) -> _Timer:
        """Run ``callback`` once ``ms`` milliseconds have elapsed."""
        timer = _Timer(self.now() + max(ms, 0), next(self._timer_seq), callback)
        heapq.heappush(self._timers, timer)
        if self._timers[0] is timer:
            self._arm()
        return timer

    def _arm(self) -> None:
        if self._timer_handle is not None:
            self._timer_handle.cancel()
            self._timer_handle = None
        while self._timers and self._timers[0].cancelled:
            heapq.heappop(self._timers)
        if self._timers:
            self._timer_handle = self.loop.call_at(
                self._timers[0].deadline / 1000, self._fire_timers
            )

    def _fire_timers(self) -> None:
        self._timer_handle = None
        now = self.now()
        due: list[_Timer] = []
        while self._timers and self._timers[0].deadline <= now:
            due.append(heapq.heappop(self._timers))
        for timer in due:
            if not timer.cancelled:
                timer.callback()
        self._arm()

    async def sleep(self, ms: float) -> None:
        """Suspend the calling task for at least ``ms`` milliseconds."""
        waiter = self.loop.create_future()

        def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        timer = self.call_later(ms, _wake)
        try:
            await suspend(waiter, "sleep")
        finally:
            timer.cancel()

    # -- combinators --------------------------------------------------------

    async def wait_all(self, futures: Iterable[Future[Any]]) -> list[Any]:
        """
        Wait until every future settles.

        Returns the values in order. If any future rejected, raises the first
        rejection observed, but only after all of them have settled.
        """
        futures = list(futures)
        for f in futures:
            if not isinstance(f, Future):
                report(
                    "fatal: wait_all() expects futures, got ${1}", type(f).__name__
                )

        remaining = len(futures)
        first_error: Optional[BaseException] = None
        waiter = self.loop.create_future()

        def _settled(f: Future[Any]) -> None:
            nonlocal remaining, first_error
            remaining -= 1
            if first_error is None and f.state is FutureState.REJECTED:
                first_error = f.exception()
            if remaining == 0 and not waiter.done():
                waiter.set_result(None)

        for f in futures:
            f.add_done_callback(_settled)
        if remaining > 0:
            await suspend(waiter, "wait_all")
        if first_error is not None:
            raise first_error
        return [f.result() for f in futures]

    # -- entry point --------------------------------------------------------

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run ``fn`` as the main task on a fresh event loop and block until it
        finishes. Tasks still pending afterwards are cancelled.
        """
        return asyncio.run(self._main(fn, args, kwargs))

    async def _main(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        self._bind(asyncio.get_running_loop())
        _SCHEDULERS[self._loop] = self
        future = self.spawn(fn, *args, **kwargs)
        try:
            return await future
        finally:
            leftovers = [t for t in self._tasks.values() if t.future is not future]
            if leftovers:
                logger.debug(
                    f"Shutting down with {len(leftovers)} unfinished task(s): {leftovers}"
                )


def get_scheduler() -> Scheduler:
    """Return the scheduler bound to the running loop, creating it on demand."""
    loop = asyncio.get_running_loop()
    scheduler = _SCHEDULERS.get(loop)
    if scheduler is None:
        scheduler = Scheduler()
        scheduler._bind(loop)
    return scheduler


def spawn_task(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
    return get_scheduler().spawn(fn, *args, **kwargs)


async def sleep(ms: float) -> None:
    await get_scheduler().sleep(ms)


async def wait_all(futures: Iterable[Future[Any]]) -> list[Any]:
    return await get_scheduler().wait_all(futures)


def now() -> float:
    """Monotonic milliseconds; usable with or without a running loop."""
    try:
        return get_scheduler().now()
    except RuntimeError:
        return time.monotonic() * 1000


def run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run ``fn`` on a new scheduler until it completes."""
    return Scheduler().run(fn, *args, **kwargs)
