"""Dependency injection container — wires adapters to the resilience layer.

The probe and the fallback chain are built once per process and handed to
route handlers through FastAPI's ``Depends()``; tests replace
``provide_chain`` via ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

import structlog
from fastapi import Request

from relay.adapters.outbound.connectivity import HttpConnectivityProbe
from relay.adapters.outbound.llm import build_provider_specs, build_retry_config
from relay.config import Settings, get_settings
from relay.shared.providers.chain import ProviderFallbackChain

logger = structlog.get_logger(__name__)


# ── Settings ─────────────────────────────────────────────────
@lru_cache(maxsize=1)
def get_cached_settings() -> Settings:
    return get_settings()


# ── Singletons ───────────────────────────────────────────────
_probe: HttpConnectivityProbe | None = None
_chain: ProviderFallbackChain | None = None


def get_probe(settings: Settings | None = None) -> HttpConnectivityProbe:
    global _probe
    if _probe is None:
        s = settings or get_cached_settings()
        _probe = HttpConnectivityProbe(
            s.connectivity_probe_url,
            timeout_s=s.connectivity_probe_timeout_seconds,
        )
    return _probe


def get_chain(settings: Settings | None = None) -> ProviderFallbackChain:
    """Create or return the process-wide fallback chain.

    Builds ProviderSpecs and the retry policy from settings; every request
    shares the per-provider breakers and rate windows owned by this chain.
    """
    global _chain
    if _chain is None:
        s = settings or get_cached_settings()
        specs = build_provider_specs(s)
        _chain = ProviderFallbackChain(
            specs,
            probe=get_probe(s),
            retry_config=build_retry_config(s),
            default_provider=s.llm_default_provider,
            auto_select_model=s.llm_auto_select_model,
            connection_ttl_s=s.connection_status_ttl_seconds,
            test_timeout_s=s.connection_test_timeout_seconds,
        )
        logger.info(
            "fallback_chain_ready",
            providers=[p.provider_id for p in specs if p.has_key],
            default_provider=s.llm_default_provider,
        )
    return _chain


async def close_container() -> None:
    """Release HTTP clients and timers held by the singletons."""
    global _chain, _probe
    if _chain is not None:
        await _chain.aclose()
        _chain = None
    if _probe is not None:
        await _probe.close()
        _probe = None


# ── FastAPI dependencies ─────────────────────────────────────
def provide_settings(request: Request) -> Settings:
    return request.app.state.settings


def provide_chain(request: Request) -> ProviderFallbackChain:
    return get_chain(request.app.state.settings)
