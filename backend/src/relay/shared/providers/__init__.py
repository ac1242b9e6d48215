"""Provider resilience layer.

Retry with circuit breaking, sliding-window rate limiting, stream
normalization and multi-provider fallback for outbound LLM calls.
"""

from relay.shared.providers.types import (
    CircuitState,
    ProviderHealth,
    ProviderSpec,
    RateLimitStatus,
    RetryConfig,
)
from relay.shared.providers.cancellation import CancellationToken
from relay.shared.providers.rate_limiter import RateLimiter
from relay.shared.providers.retry import RetryEngine
from relay.shared.providers.router import ModelRouter
from relay.shared.providers.stream import StreamNormalizer
from relay.shared.providers.chain import ProviderFallbackChain

__all__ = [
    "CancellationToken",
    "CircuitState",
    "ModelRouter",
    "ProviderFallbackChain",
    "ProviderHealth",
    "ProviderSpec",
    "RateLimitStatus",
    "RateLimiter",
    "RetryConfig",
    "RetryEngine",
    "StreamNormalizer",
]
