"""Inactivity timeout and cooperative cancellation for a stream.

A :class:`CancellationToken` is shared by everything that suspends on
behalf of one session.  :meth:`CancellationToken.guard` wraps each
suspension point so that a cancellation (user request or idle timeout)
abandons the pending read instead of waiting for the producer.

The :class:`CompletionSupervisor` holds the single idle timer.  The
timer is re-armed on every event and cleared on every terminal
transition, so it can never fire against a finished session.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from contextlib import suppress
from typing import Callable, TypeVar

from relaystream.errors import StreamCancelled

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 30.0

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal.

    The first :meth:`cancel` wins and records its ``reason``; later calls
    return ``False``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        If both finish together the awaitable's result is returned and
        the caller sees the cancellation on its next check.

        Raises:
            StreamCancelled: The token fired before *awaitable* finished.
                The pending awaitable is cancelled.
        """
        task = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            raise StreamCancelled(self.reason)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        raise StreamCancelled(self.reason)


class CompletionSupervisor:
    """Fires ``on_timeout`` after ``timeout`` seconds without activity.

    Args:
        on_timeout: Called once, from the event loop, when the timer
            expires.
        timeout: Idle threshold in seconds.
    """

    def __init__(
        self,
        on_timeout: Callable[[], None],
        timeout: float = DEFAULT_IDLE_TIMEOUT,
    ):
        self.timeout = timeout
        self._on_timeout = on_timeout
        self._handle: asyncio.TimerHandle | None = None
        self.stopped = False
        self.fired = False

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def reset(self) -> None:
        """(Re)start the idle timer.  No-op once stopped."""
        if self.stopped:
            return
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.timeout, self._fire)

    def stop(self) -> None:
        """Clear the timer for good."""
        self.stopped = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self.stopped:
            return
        self.stopped = True
        self.fired = True
        logger.info(f"No stream activity for {self.timeout}s, forcing completion")
        self._on_timeout()
