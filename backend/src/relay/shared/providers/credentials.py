"""Credential format checks used to decide whether a provider is eligible."""

from __future__ import annotations

import re

import structlog

from relay.shared.providers.types import ProviderSpec

logger = structlog.get_logger(__name__)

_MIN_KEY_LENGTH = 8
_LOOSE_MIN_LENGTH = 10
_DEFAULT_MIN_LENGTH = 16

KEY_PATTERNS: dict[str, str] = {
    "openai": r"^sk-[A-Za-z0-9]{30,}$",
    "anthropic": r"^(sk-ant-|ant-)[A-Za-z0-9]{20,}$",
    "groq": r"^gsk_[A-Za-z0-9]{20,}$",
    "perplexity": r"^pplx-[A-Za-z0-9]{20,}$",
    "xai": r"^(xai-|grok-)?[A-Za-z0-9]{20,}$",
}

_MIN_LENGTHS: dict[str, int] = {
    "google": 30,
}

_KEY_PREFIXES: dict[str, tuple[str, ...]] = {
    "openai": ("sk-",),
    "anthropic": ("sk-ant-", "ant-"),
    "groq": ("gsk_",),
    "perplexity": ("pplx-",),
    "xai": ("xai-", "grok-"),
}


def validate_api_key(provider_id: str, key: str | None, *, key_pattern: str = "") -> bool:
    """Strict format check. ``key_pattern`` overrides the built-in table."""
    if not key or not key.strip():
        return False
    key = key.strip()
    if len(key) < _MIN_KEY_LENGTH:
        return False

    regex = key_pattern or KEY_PATTERNS.get(provider_id)
    if regex:
        return re.fullmatch(regex, key) is not None
    return len(key) >= _MIN_LENGTHS.get(provider_id, _DEFAULT_MIN_LENGTH)


def loose_validate_api_key(key: str | None) -> bool:
    """Length-only check used when the strict format does not match."""
    return bool(key and len(key.strip()) >= _LOOSE_MIN_LENGTH)


def api_key_quality_score(provider_id: str, key: str | None) -> float:
    """Heuristic 0..1 confidence that ``key`` is a real credential for the provider."""
    if not key:
        return 0.0
    key = key.strip()
    score = 0.5
    if len(key) >= 30:
        score += 0.2
    elif len(key) >= 20:
        score += 0.1
    if key.startswith(_KEY_PREFIXES.get(provider_id, ())):
        score += 0.3
    return min(score, 1.0)


def is_key_eligible(spec: ProviderSpec) -> bool:
    """A provider is usable when its key passes the strict or the loose check."""
    if not spec.has_key:
        return False
    if validate_api_key(spec.provider_id, spec.api_key, key_pattern=spec.key_pattern):
        return True
    if loose_validate_api_key(spec.api_key):
        logger.warning(
            "api_key_loose_validation",
            provider=spec.provider_id,
            quality=api_key_quality_score(spec.provider_id, spec.api_key),
        )
        return True
    logger.debug("api_key_rejected", provider=spec.provider_id)
    return False
