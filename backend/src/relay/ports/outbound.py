"""Outbound ports — interfaces that infrastructure adapters must implement.

The resilience layer depends only on these abstractions, never on the
concrete connectivity service that backs them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class ConnectivityProbe(ABC):
    """Reports whether the process can reach the outside world.

    ``is_online`` must be cheap (a cached flag kept current by the
    environment's connectivity events); ``probe_service`` is an active,
    short-timeout health check of a reachable backend.
    """

    @abstractmethod
    def is_online(self) -> bool: ...

    @abstractmethod
    async def probe_service(self) -> bool: ...
