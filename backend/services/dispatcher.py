"""Fixed-window rate limiter for outbound Jikan calls.

Callers submit a coroutine factory and await the returned future. A single
supervisor task drains the FIFO queue in batches of at most
``max_per_window`` tasks, runs each batch concurrently, waits for every task
in it to settle, then sleeps one full window before taking the next batch.
That guarantees at most N starts per window regardless of how fast the batch
finished.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from errors import DispatcherStoppedError

logger = logging.getLogger(__name__)


class DispatcherState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"


@dataclass
class DispatchTask:
    execute: Callable[[], Awaitable[Any]]
    future: asyncio.Future = field(repr=False)


class RateLimitedDispatcher:
    def __init__(self, max_per_window: int = 4, window_seconds: float = 1.0):
        if max_per_window <= 0:
            raise ValueError("max_per_window must be positive")
        if window_seconds < 0:
            raise ValueError("window_seconds must not be negative")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self._queue: asyncio.Queue[DispatchTask] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._state = DispatcherState.IDLE
        self.batches_dispatched = 0
        self.tasks_dispatched = 0

    @property
    def state(self) -> DispatcherState:
        return self._state

    @property
    def pending(self) -> int:
        """Tasks queued but not yet admitted into a batch."""
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def submit(self, execute: Callable[[], Awaitable[Any]]) -> asyncio.Future:
        """Queue ``execute`` for the next free slot and return its future.

        ``execute`` is called exactly once, on the event loop, when its batch
        is admitted. Its result or exception resolves the future.
        """
        loop = asyncio.get_running_loop()
        task = DispatchTask(execute=execute, future=loop.create_future())
        self._queue.put_nowait(task)
        self._ensure_worker(loop)
        return task.future

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self.running:
            self._worker = loop.create_task(self._run(), name="jikan-dispatcher")

    async def _run(self) -> None:
        while True:
            first = await self._queue.get()
            batch = [first]
            while len(batch) < self.max_per_window and not self._queue.empty():
                batch.append(self._queue.get_nowait())

            self._state = DispatcherState.DRAINING
            self.batches_dispatched += 1
            logger.debug(
                "Dispatching batch of %d (%d still queued)", len(batch), self._queue.qsize()
            )
            await asyncio.gather(*(self._execute(task) for task in batch))

            # Fixed window: the cooldown runs even when the batch finished early
            await asyncio.sleep(self.window_seconds)
            if self._queue.empty():
                self._state = DispatcherState.IDLE

    async def _execute(self, task: DispatchTask) -> None:
        self.tasks_dispatched += 1
        try:
            result = await task.execute()
        except asyncio.CancelledError:
            if not task.future.done():
                task.future.set_exception(DispatcherStoppedError())
            raise
        except Exception as e:
            if not task.future.done():
                task.future.set_exception(e)
        else:
            if not task.future.done():
                task.future.set_result(result)

    async def stop(self) -> None:
        """Stop the supervisor and fail anything still waiting in the queue."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        self._state = DispatcherState.IDLE

        dropped = 0
        while not self._queue.empty():
            task = self._queue.get_nowait()
            if not task.future.done():
                task.future.set_exception(DispatcherStoppedError())
            dropped += 1
        if dropped:
            logger.warning("Dispatcher stopped with %d queued requests", dropped)
