"""Cooperative cancellation shared by the loop, the tools and child processes.

One token is created per turn and threaded through the provider
stream, every executor, approval prompts and spawned processes.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import OperationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """A one-shot, awaitable cancellation signal."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.info("Cancellation requested: %s", reason)
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Run ``cb`` on cancellation (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        if self._event.is_set():
            cb()
            return lambda: None
        self._callbacks.append(cb)

        def _remove() -> None:
            try:
                self._callbacks.remove(cb)
            except ValueError:
                pass

        return _remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(what)


async def race(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    what: str = "operation",
) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the inner task is cancelled and awaited, then
    OperationCancelledError is raised.
    """
    if token is None:
        return await awaitable
    token.raise_if_cancelled(what)
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        waiter.cancel()
        raise
    if task.done():
        waiter.cancel()
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Task raised while being cancelled for %s", what, exc_info=True)
    raise OperationCancelledError(what)
