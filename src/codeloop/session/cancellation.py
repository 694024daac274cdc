"""Cooperative cancellation tokens.

A token is observed at every suspension point of a session loop. Child
tokens are derived from a parent; cancelling the parent cancels every
live child, while cancelling a child leaves the parent untouched.
"""

from __future__ import annotations

import asyncio
import contextlib
import weakref
from collections.abc import Awaitable, Callable
from typing import TypeVar

from codeloop.errors import Cancelled

T = TypeVar("T")


class CancellationToken:
    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._children: weakref.WeakSet[CancellationToken] = weakref.WeakSet()
        self._callbacks: list[Callable[[], None]] = []
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token and cascade to children. Idempotent."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for child in list(self._children):
            child.cancel(reason)
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def child(self) -> CancellationToken:
        return CancellationToken(parent=self)

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled).

        Returns:
            A function that unregisters the callback.
        """
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled(self._reason or "cancelled")


async def race(awaitable: Awaitable[T], token: CancellationToken) -> T:
    """Await ``awaitable`` unless ``token`` fires first.

    On cancellation the pending work is cancelled and awaited before
    ``Cancelled`` is raised, so nothing is left running.
    """
    token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        await asyncio.wait({work})
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()

    work.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await work
    raise Cancelled(token.reason or "cancelled")
