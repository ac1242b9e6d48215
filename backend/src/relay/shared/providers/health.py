"""Connection-status cache fed by ``test_connection``.

Results expire after a TTL so a stale failure does not mark a provider
unhealthy forever; an expired or missing entry reads as "unknown" (None).
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass


@dataclass
class _Entry:
    ok: bool
    recorded_at: float


class ConnectionStatusCache:
    """Thread-safe provider_id → last connection result, with expiry."""

    def __init__(self, ttl_seconds: float = 300.0) -> None:
        self._ttl = ttl_seconds
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def record(self, provider_id: str, ok: bool) -> None:
        with self._lock:
            self._entries[provider_id] = _Entry(ok=ok, recorded_at=time.monotonic())

    def get(self, provider_id: str) -> bool | None:
        with self._lock:
            entry = self._entries.get(provider_id)
            if entry is None:
                return None
            if time.monotonic() - entry.recorded_at > self._ttl:
                del self._entries[provider_id]
                return None
            return entry.ok

    def forget(self, provider_id: str) -> None:
        with self._lock:
            self._entries.pop(provider_id, None)

