"""Tests for the sliding-window RateLimiter."""

from __future__ import annotations

import asyncio
import time

import pytest

from relay.domain.exceptions import RequestCancelledError
from relay.shared.providers.cancellation import CancellationToken
from relay.shared.providers.rate_limiter import RateLimiter


class TestAdmission:
    @pytest.mark.asyncio
    async def test_under_limit_is_immediate(self) -> None:
        limiter = RateLimiter("alpha", max_requests=3, window_seconds=10.0)
        start = time.monotonic()
        for _ in range(3):
            await limiter.acquire()
        assert time.monotonic() - start < 0.05
        assert limiter.requests_in_window == 3

    @pytest.mark.asyncio
    async def test_third_call_waits_for_window_to_slide(self) -> None:
        limiter = RateLimiter("alpha", max_requests=2, window_seconds=0.2)
        start = time.monotonic()
        await limiter.acquire()
        await limiter.acquire()
        await limiter.acquire()
        assert time.monotonic() - start >= 0.2

    @pytest.mark.asyncio
    async def test_no_window_ever_exceeds_max(self) -> None:
        limiter = RateLimiter("alpha", max_requests=2, window_seconds=0.2)
        granted: list[float] = []

        async def worker() -> None:
            await limiter.acquire()
            granted.append(time.monotonic())

        await asyncio.gather(*(worker() for _ in range(6)))

        assert len(granted) == 6
        for i in range(len(granted) - 2):
            assert granted[i + 2] - granted[i] >= 0.2 - 0.01

    @pytest.mark.asyncio
    async def test_waiters_granted_in_fifo_order(self) -> None:
        limiter = RateLimiter("alpha", max_requests=1, window_seconds=0.1)
        await limiter.acquire()
        order: list[int] = []

        async def worker(i: int) -> None:
            await limiter.acquire()
            order.append(i)

        tasks = []
        for i in range(3):
            tasks.append(asyncio.create_task(worker(i)))
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_unlimited_when_max_is_zero(self) -> None:
        limiter = RateLimiter("alpha", max_requests=0, window_seconds=1.0)
        for _ in range(100):
            await limiter.acquire()
        assert limiter.status().current == 0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_queue(self) -> None:
        limiter = RateLimiter("alpha", max_requests=1, window_seconds=5.0)
        await limiter.acquire()
        token = CancellationToken()

        task = asyncio.create_task(limiter.acquire(cancel_token=token))
        await asyncio.sleep(0.01)
        assert limiter.status().waiting == 1

        token.cancel()
        with pytest.raises(RequestCancelledError):
            await task
        assert limiter.status().waiting == 0
        assert limiter.requests_in_window == 1

    @pytest.mark.asyncio
    async def test_cancelled_token_rejected_before_queueing(self) -> None:
        limiter = RateLimiter("alpha", max_requests=5, window_seconds=5.0)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RequestCancelledError):
            await limiter.acquire(cancel_token=token)
        assert limiter.requests_in_window == 0

    @pytest.mark.asyncio
    async def test_cancelling_head_wakes_next_waiter(self) -> None:
        limiter = RateLimiter("alpha", max_requests=1, window_seconds=0.1)
        await limiter.acquire()
        token = CancellationToken()

        head = asyncio.create_task(limiter.acquire(cancel_token=token))
        await asyncio.sleep(0)
        tail = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)

        token.cancel()
        with pytest.raises(RequestCancelledError):
            await head
        await asyncio.wait_for(tail, timeout=1.0)
        assert limiter.status().waiting == 0


class TestStatusAndReset:
    @pytest.mark.asyncio
    async def test_status_reports_window(self) -> None:
        limiter = RateLimiter("alpha", max_requests=2, window_seconds=1.0)
        assert limiter.status().next_slot_in == 0.0

        await limiter.acquire()
        await limiter.acquire()
        status = limiter.status()
        assert status.current == 2
        assert status.max == 2
        assert 0.0 < status.next_slot_in <= 1.0
        assert status.waiting == 0

    @pytest.mark.asyncio
    async def test_reset_releases_all_waiters(self) -> None:
        limiter = RateLimiter("alpha", max_requests=1, window_seconds=30.0)
        await limiter.acquire()
        waiters = [asyncio.create_task(limiter.acquire()) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert limiter.status().waiting == 3

        limiter.reset()
        await asyncio.wait_for(asyncio.gather(*waiters), timeout=1.0)
        status = limiter.status()
        assert status.waiting == 0
        assert status.current == 3

    def test_invalid_window(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter("alpha", max_requests=1, window_seconds=0)
