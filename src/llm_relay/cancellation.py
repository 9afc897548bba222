"""Cooperative cancellation handle shared by the network call and tool execution."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Awaitable, Optional, TypeVar

from llm_relay.errors import AbortedError

if TYPE_CHECKING:
    from llm_relay.types import ToolCallContext

__all__ = ["CancelToken"]

T = TypeVar("T")

USER_CANCELLED = "**User cancelled inference**"


class CancelToken:
    """
    Single-shot cancellation flag.

    A caller-side deadline is just a token that cancels itself from a timer,
    see :meth:`with_timeout`.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        self.reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancelToken":
        token = cls()
        loop = asyncio.get_running_loop()
        token._timer = loop.call_later(seconds, token.cancel, "deadline exceeded")
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def raise_if_cancelled(
        self, response: str = USER_CANCELLED, context: Optional[ToolCallContext] = None
    ) -> None:
        if self.cancelled:
            raise AbortedError(response, context)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(
        self,
        awaitable: Awaitable[T],
        *,
        context: Optional[ToolCallContext] = None,
    ) -> T:
        """Await *awaitable* unless the token fires first.

        When the token wins, the pending work is cancelled and
        :class:`AbortedError` is raised.
        """
        if self.cancelled:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise AbortedError(USER_CANCELLED, context)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortedError(USER_CANCELLED, context)
