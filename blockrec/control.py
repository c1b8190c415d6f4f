"""Single sequencing point for client commands and backend notifications."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")

Operation = Callable[[], Awaitable[Any]]

_STOP = object()


class ControlLoop:
    """Runs queued operations one at a time on a single asyncio task.

    Commands go through ``submit()`` and the caller awaits the outcome.
    Backend events go through ``post()``; nobody waits on them, so their
    failures are logged instead of raised.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._log = logging.getLogger("control")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="control_loop")

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._queue.put_nowait(_STOP)
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._task = None

    async def submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((operation, future))
        return await future

    def post(self, operation: Operation) -> None:
        self._queue.put_nowait((operation, None))

    async def drain(self) -> None:
        """Wait until everything queued so far has been processed."""

        async def _noop() -> None:
            return None

        await self.submit(_noop)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            operation, future = item
            if future is not None and future.done():
                # Caller went away before we got to it.
                continue
            try:
                result = await operation()
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if future is None:
                    self._log.exception("Queued operation failed: %s", exc)
                elif not future.done():
                    future.set_exception(exc)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
