"""
Cancellation: a signal threaded through every suspension point.
================================================================
A CancellationToken is created by whoever owns the request (route
handler, CLI, stream consumer). Passing it down lets a client
disconnect stop in-flight variant calls instead of letting them run
to completion and bill tokens nobody will read.

Usage:
    token = CancellationToken()
    result = await run_cancellable(client.generate(...), token, timeout=90)
    ...
    token.cancel("client disconnected")   # from another task
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

logger = logging.getLogger("structgen.cancellation")

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation flag backed by an asyncio.Event (created lazily)."""

    def __init__(self) -> None:
        self._event: Optional[asyncio.Event] = None
        self._cancelled = False
        self.reason: Optional[str] = None

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        if self._event is not None:
            self._event.set()
        logger.info(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError(self.reason)

    async def wait(self) -> None:
        await self._get_event().wait()


async def run_cancellable(aw: Awaitable[T], token: Optional[CancellationToken] = None,
                          timeout: Optional[float] = None) -> T:
    """
    Await `aw`, racing it against the token and an optional timeout.

    Raises
    ------
    asyncio.CancelledError  the token fired first (the work is cancelled)
    asyncio.TimeoutError    the timeout elapsed first (the work is cancelled)
    """
    if token is None:
        if timeout is None:
            return await aw
        return await asyncio.wait_for(aw, timeout=timeout)

    token.raise_if_cancelled()
    work = asyncio.ensure_future(aw)
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    await asyncio.gather(work, return_exceptions=True)
    if token.cancelled:
        raise asyncio.CancelledError(token.reason)
    raise asyncio.TimeoutError(f"operation timed out after {timeout}s")
