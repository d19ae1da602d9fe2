"""
The single serialization point.

Everything that touches rooms or connections runs as a plain synchronous
callback on one worker task that drains ``SerialDispatcher``'s queue:
inbound frames, timer callbacks and the completions of offloaded work.
"""

import asyncio
import functools
from typing import Any, Callable, Optional

from engine.registry import Connection, now_ms
from logging_config import get_logger

logger = get_logger(__name__)


class SerialDispatcher:
    def __init__(self):
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._tasks = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self):
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._run())
        logger.info("Dispatcher started")

    async def stop(self):
        for task in list(self._tasks):
            task.cancel()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("Dispatcher stopped")

    def submit(self, callback: Callable, *args, connection: Optional[Connection] = None):
        self._queue.put_nowait((callback, args, connection, None))

    async def call(self, callback: Callable, *args) -> Any:
        """Run ``callback`` on the worker and wait for its return value."""
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((callback, args, None, future))
        return await future

    async def drain(self):
        await self._queue.join()

    async def _run(self):
        while True:
            callback, args, connection, future = await self._queue.get()
            try:
                self._execute(callback, args, connection, future)
            finally:
                self._queue.task_done()

    def _execute(self, callback, args, connection, future):
        try:
            result = callback(*args)
        except Exception as e:
            name = getattr(callback, "__name__", repr(callback))
            logger.error(f"Unhandled error in {name}: {e}", exc_info=True)
            if future is not None and not future.done():
                future.set_exception(e)
            if connection is not None and connection.is_open:
                connection.send({
                    "type": "error",
                    "error": "internal server error",
                    "details": str(e),
                    "timestamp": now_ms(),
                })
            return
        if future is not None and not future.done():
            future.set_result(result)

    def offload(self, coro, on_done: Callable[[Any, Optional[BaseException]], None],
                connection: Optional[Connection] = None) -> asyncio.Task:
        """Run ``coro`` off the worker; ``on_done(result, error)`` re-enters it when finished."""
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)

        def _finished(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            self.submit(on_done, None if error else t.result(), error, connection=connection)

        task.add_done_callback(_finished)
        return task

    def offload_blocking(self, fn: Callable, *args,
                         on_done: Optional[Callable[[Any, Optional[BaseException]], None]] = None,
                         connection: Optional[Connection] = None) -> asyncio.Task:
        loop = asyncio.get_running_loop()
        job = loop.run_in_executor(None, functools.partial(fn, *args))
        return self.offload(_await(job), on_done or _log_failure(fn), connection=connection)


async def _await(future):
    return await future


def _log_failure(fn):
    def on_done(result, error):
        if error is not None:
            logger.error(f"Background call {getattr(fn, '__name__', fn)} failed: {error}")
    return on_done


class ScheduledCall:
    def __init__(self):
        self._handle: Optional[asyncio.TimerHandle] = None
        self.cancelled = False

    def cancel(self):
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()


class Scheduler:
    """Timers whose callbacks run through the dispatcher rather than on the bare loop."""

    def __init__(self, dispatcher: SerialDispatcher):
        self.dispatcher = dispatcher
        self._calls = set()

    def call_later(self, delay: float, callback: Callable, *args) -> ScheduledCall:
        call = ScheduledCall()

        def fire():
            self._calls.discard(call)
            if not call.cancelled:
                self.dispatcher.submit(callback, *args)

        call._handle = asyncio.get_running_loop().call_later(delay, fire)
        self._calls.add(call)
        return call

    def every(self, interval: float, callback: Callable, *args) -> ScheduledCall:
        call = ScheduledCall()
        loop = asyncio.get_running_loop()

        def fire():
            if call.cancelled:
                return
            self.dispatcher.submit(callback, *args)
            call._handle = loop.call_later(interval, fire)

        call._handle = loop.call_later(interval, fire)
        self._calls.add(call)
        return call

    def cancel_all(self):
        for call in list(self._calls):
            call.cancel()
        self._calls.clear()
