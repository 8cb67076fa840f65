"""
Cancellation for in-flight dispatches.

CancellationToken is threaded from the caller into every transport call.
Once cancelled, the transport task is torn down and no further updates reach
the sink. UpdateGate is the caller-side half: it drops updates that arrive in
the 2s after a cancel, so a late chunk can't resurrect a dismissed response.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, TypeVar

from switchboard.errors import CancellationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCEL_GRACE_SECONDS = 2.0

UpdateSink = Callable[[str, "str | None"], None]


class CancellationToken:
    """One-shot cancellation flag that transports can await on."""

    def __init__(self):
        self._event = asyncio.Event()
        self.cancelled_at: float | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self.cancelled_at = time.monotonic()
        self._event.set()
        logger.info("Dispatch cancelled")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError("Request cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        Run `awaitable` until it finishes or the token is cancelled,
        whichever comes first. On cancel the work is torn down and
        CancellationError is raised.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise CancellationError("Request cancelled")

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise

        if work in done:
            waiter.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            # The transport may fail while unwinding; the cancel wins.
            logger.debug("Transport raised while cancelling: %s", e)
        raise CancellationError("Request cancelled")


def guarded_sink(token: CancellationToken, sink: UpdateSink | None) -> UpdateSink:
    """Wrap a sink so nothing is delivered once the token is cancelled."""

    def _deliver(text: str, thoughts: str | None) -> None:
        if sink is None or token.cancelled:
            return
        sink(text, thoughts)

    return _deliver


class UpdateGate:
    """
    Caller-side suppression window after a cancel.

    The caller calls mark_cancelled() when the user hits stop, and routes
    incoming updates through wrap(); anything arriving within the grace window
    is dropped.
    """

    def __init__(
        self,
        grace_seconds: float = CANCEL_GRACE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._cancelled_at: float | None = None

    def mark_cancelled(self) -> None:
        self._cancelled_at = self._clock()

    def recently_cancelled(self) -> bool:
        if self._cancelled_at is None:
            return False
        return (self._clock() - self._cancelled_at) < self.grace_seconds

    def wrap(self, sink: UpdateSink) -> UpdateSink:
        def _deliver(text: str, thoughts: str | None) -> None:
            if self.recently_cancelled():
                return
            sink(text, thoughts)

        return _deliver
