"""Sliding-window rate limiter — at most N admissions per window, per provider.

Admissions older than the window are evicted, so the budget replenishes over
time.  Callers that find the window full queue in FIFO order; only the head
of the queue has a timer armed, and every wake-up re-checks the window before
granting, so a burst of waiters can never over-admit.

All state is touched from the event loop thread only.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque

import structlog

from relay.shared.observability.metrics import RATE_LIMIT_WAITS
from relay.shared.providers.cancellation import CancellationToken, guarded
from relay.shared.providers.types import RateLimitStatus

logger = structlog.get_logger(__name__)

# Slack added to computed waits so the oldest admission has surely expired.
_WAKE_BUFFER_S = 0.05


class RateLimiter:
    """Per-provider sliding-window admission control."""

    def __init__(
        self,
        provider_id: str,
        *,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        warning_threshold: float = 0.90,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._provider_id = provider_id
        self._max = max_requests
        self._window = window_seconds
        self._warning_thr = warning_threshold

        self._admissions: deque[float] = deque()
        self._waiters: deque[asyncio.Future[None]] = deque()
        self._timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._warning_emitted = False

    @property
    def max_requests(self) -> int:
        return self._max

    @property
    def window_seconds(self) -> float:
        return self._window

    async def acquire(self, *, cancel_token: CancellationToken | None = None) -> None:
        """Wait for a slot and charge it to the current window.

        Raises:
            RequestCancelledError: ``cancel_token`` fired while queued.
        """
        if self._max <= 0:
            return
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        self._evict()
        if not self._waiters and len(self._admissions) < self._max:
            self._admit()
            return

        loop = asyncio.get_running_loop()
        self._loop = loop
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        RATE_LIMIT_WAITS.labels(provider=self._provider_id).inc()
        logger.debug(
            "rate_limit_queued",
            provider=self._provider_id,
            in_window=len(self._admissions),
            limit=self._max,
            queued=len(self._waiters),
        )
        self._schedule()

        try:
            await guarded(waiter, cancel_token)
        except BaseException:
            if not waiter.done():
                waiter.cancel()
            if waiter in self._waiters:
                self._waiters.remove(waiter)
            self._drain()
            raise

    def status(self) -> RateLimitStatus:
        self._evict()
        current = len(self._admissions)
        next_slot_in = 0.0
        if current >= self._max > 0:
            next_slot_in = max(0.0, self._window - (time.monotonic() - self._admissions[0]))
        return RateLimitStatus(
            current=current,
            max=self._max,
            next_slot_in=next_slot_in,
            waiting=len(self._waiters),
        )

    @property
    def requests_in_window(self) -> int:
        self._evict()
        return len(self._admissions)

    def reset(self) -> None:
        """Clear the window and release every queued caller now (admin override)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._admissions.clear()
        self._warning_emitted = False
        released = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._admissions.append(time.monotonic())
                waiter.set_result(None)
                released += 1
        logger.info("rate_limit_reset", provider=self._provider_id, released=released)

    # ── Internals ────────────────────────────────────────────
    def _admit(self) -> None:
        self._admissions.append(time.monotonic())
        self._check_warning()

    def _evict(self) -> None:
        cutoff = time.monotonic() - self._window
        while self._admissions and self._admissions[0] <= cutoff:
            self._admissions.popleft()
        if self._max > 0 and len(self._admissions) / self._max < self._warning_thr:
            self._warning_emitted = False

    def _drain(self) -> None:
        """Grant queued callers while the window has room; rearm for the rest."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._evict()
        while self._waiters and len(self._admissions) < self._max:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._admit()
            waiter.set_result(None)
        self._schedule()

    def _schedule(self) -> None:
        """Arm a single timer for when the oldest admission leaves the window."""
        if self._timer is not None or not self._waiters or self._loop is None:
            return
        if self._admissions:
            age = time.monotonic() - self._admissions[0]
            delay = max(0.0, self._window - age) + _WAKE_BUFFER_S
        else:
            delay = 0.0
        self._timer = self._loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        self._drain()

    def _check_warning(self) -> None:
        if self._max <= 0 or self._warning_emitted:
            return
        usage = len(self._admissions) / self._max
        if usage >= self._warning_thr:
            self._warning_emitted = True
            logger.warning(
                "rate_limit_warning",
                provider=self._provider_id,
                usage_pct=float(f"{(usage * 100):.1f}"),
                requests_used=len(self._admissions),
                limit=self._max,
            )
