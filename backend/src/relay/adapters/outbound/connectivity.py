"""Connectivity probes backing the ``ConnectivityProbe`` port."""

from __future__ import annotations

import httpx
import structlog

from relay.ports.outbound import ConnectivityProbe

logger = structlog.get_logger(__name__)


class HttpConnectivityProbe(ConnectivityProbe):
    """Cached online flag plus an HTTP health check of ``health_url``.

    The flag starts online and is flipped by ``set_online`` from whatever
    watches the host's network state.  An empty ``health_url`` disables the
    active check (it always succeeds).
    """

    def __init__(
        self,
        health_url: str = "",
        *,
        timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._health_url = health_url
        self._timeout = timeout_s
        self._online = True
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        if online != self._online:
            logger.info("connectivity_changed", online=online)
        self._online = online

    async def probe_service(self) -> bool:
        if not self._health_url:
            return True
        try:
            response = await self._client.get(self._health_url, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("service_probe_failed", url=self._health_url, error=str(exc))
            return False
        if not response.is_success:
            logger.warning(
                "service_probe_failed", url=self._health_url, status_code=response.status_code
            )
        return response.is_success

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StaticConnectivityProbe(ConnectivityProbe):
    """Fixed answers; used when no connectivity monitoring is available and in tests."""

    def __init__(self, *, online: bool = True, service_ok: bool = True) -> None:
        self.online = online
        self.service_ok = service_ok
        self.probe_calls = 0

    def is_online(self) -> bool:
        return self.online

    async def probe_service(self) -> bool:
        self.probe_calls += 1
        return self.service_ok
