"""Tests for the connection-status cache behind provider health."""

from __future__ import annotations

import time

from relay.shared.providers.health import ConnectionStatusCache


class TestConnectionStatusCache:
    def test_unknown_provider_reads_none(self) -> None:
        assert ConnectionStatusCache().get("alpha") is None

    def test_record_and_forget(self) -> None:
        cache = ConnectionStatusCache(ttl_seconds=60)
        cache.record("alpha", False)
        cache.record("beta", True)
        assert cache.get("alpha") is False
        assert cache.get("beta") is True

        cache.forget("alpha")
        assert cache.get("alpha") is None
        assert cache.get("beta") is True
        cache.forget("omega")

    def test_latest_result_wins(self) -> None:
        cache = ConnectionStatusCache(ttl_seconds=60)
        cache.record("alpha", False)
        cache.record("alpha", True)
        assert cache.get("alpha") is True

    def test_entries_expire(self) -> None:
        cache = ConnectionStatusCache(ttl_seconds=0.01)
        cache.record("alpha", False)
        time.sleep(0.02)
        assert cache.get("alpha") is None
