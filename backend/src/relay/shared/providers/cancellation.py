"""Cancellation token threaded through one chat call.

A single token combines the caller's cancel signal and an optional overall
deadline.  Every suspension point in the pipeline (rate-limit wait, backoff,
network wait, stream read) goes through ``race`` / ``sleep`` so a cancel is
observed promptly and surfaces as ``RequestCancelledError``.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from relay.domain.exceptions import RequestCancelledError

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "Request was cancelled."
        self._deadline: asyncio.TimerHandle | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> CancellationToken:
        """Token that cancels itself after ``seconds`` (needs a running loop)."""
        token = cls()
        token.cancel_after(seconds)
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        if reason:
            self._reason = reason
        self._event.set()
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    def cancel_after(self, seconds: float) -> None:
        loop = asyncio.get_running_loop()
        if self._deadline is not None:
            self._deadline.cancel()
        self._deadline = loop.call_later(
            seconds, self.cancel, f"Request timed out after {seconds:g}s."
        )

    def disarm(self) -> None:
        """Drop a pending deadline once the call it guarded has finished."""
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None

    @property
    def armed(self) -> bool:
        return self._deadline is not None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelledError(self._reason)

    async def race(self, aw: Awaitable[T]) -> T:
        """Await ``aw`` unless the token fires first; the loser is cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise RequestCancelledError(self._reason)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()
        task.cancel()
        raise RequestCancelledError(self._reason)

    async def sleep(self, delay: float) -> None:
        await self.race(asyncio.sleep(delay))


async def guarded(aw: Awaitable[T], token: CancellationToken | None) -> T:
    """Await ``aw`` directly, or through ``token`` when one is supplied."""
    if token is None:
        return await aw
    return await token.race(aw)


async def guarded_sleep(delay: float, token: CancellationToken | None) -> None:
    if token is None:
        await asyncio.sleep(delay)
    else:
        await token.sleep(delay)
