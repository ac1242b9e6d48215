"""Core types for the provider resilience layer."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable

from relay.domain.entities import ChatRequest
from relay.domain.enums import AuthScheme

BodyTransform = Callable[[ChatRequest, str], dict[str, Any]]
ContentExtractor = Callable[[Any], "str | None"]
DeltaParser = Callable[[Any], "str | None"]


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    HALF_OPEN = "half_open"
    OPEN = "open"


@dataclass(frozen=True)
class RetryConfig:
    """Immutable retry + circuit-breaker policy for one RetryEngine.

    Attributes:
        max_retries:            Retries after the first attempt (total = max_retries + 1).
        initial_delay:          Seconds before the first retry.
        max_delay:              Upper bound on any single backoff delay.
        backoff_factor:         Geometric growth per retry.
        jitter_factor:          Relative ± band applied to each delay (0..1).
        circuit_reset_timeout:  Seconds the circuit stays OPEN before a half-open trial.
        half_open_max_attempts: Trial successes required to close the circuit.
        server_failure_threshold:  Consecutive failures that trip the circuit
                                   when the latest failure is service-class.
        network_failure_threshold: Same, when the latest failure is network-class.
        network_wait_timeout:   Bound on suspension while the probe reports offline.
        network_poll_interval:  Seconds between connectivity re-checks while offline.
    """

    max_retries: int = 3
    initial_delay: float = 0.3
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter_factor: float = 0.1
    circuit_reset_timeout: float = 30.0
    half_open_max_attempts: int = 3
    server_failure_threshold: int = 3
    network_failure_threshold: int = 5
    network_wait_timeout: float = 30.0
    network_poll_interval: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError("jitter_factor must be within [0, 1]")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.half_open_max_attempts < 1:
            raise ValueError("half_open_max_attempts must be >= 1")
        if self.server_failure_threshold < 1 or self.network_failure_threshold < 1:
            raise ValueError("failure thresholds must be >= 1")


@dataclass(frozen=True)
class CircuitSnapshot:
    """Read-only view of a breaker at one instant."""

    state: CircuitState
    consecutive_failures: int
    last_failure_at: float | None
    last_success_at: float | None
    half_open_success_count: int
    half_open_trials: int


@dataclass(frozen=True)
class RateLimitStatus:
    current: int
    max: int
    next_slot_in: float
    waiting: int = 0


@dataclass(frozen=True)
class ProviderSpec:
    """Static description of a single upstream provider.

    Attributes:
        provider_id:     Unique identifier (e.g. "anthropic", "openai").
        api_key:         Credential; empty means "not configured".
        endpoint:        Chat endpoint (``{model}`` is substituted when present).
        priority:        Lower = tried earlier during fallback.
        default_model:   Model used when this provider is reached by fallback.
        auth_scheme:     Bearer token, custom header, or query parameter.
        auth_header:     Header / query parameter name for non-bearer schemes.
        extra_headers:   Static headers sent with every request.
        body_transform:  Maps a ChatRequest (+ resolved model) to the payload.
        extract_content: Pulls the text out of a non-streamed JSON response.
        parse_delta:     Pulls one text fragment out of a decoded stream event.
        stream_endpoint: Alternate endpoint for streamed calls ("" = endpoint).
        key_pattern:     Regex for strict credential validation ("" = length only).
        test_endpoint:   Cheap endpoint used by ``test_connection``.
        test_method:     HTTP method for ``test_endpoint``.
        test_body:       JSON body sent with a POST connection test.
        timeout_s:       Per-request timeout in seconds.
        rpm_limit:       Admissions per ``rate_window_s`` (0 = unlimited).
        rate_window_s:   Sliding window length for ``rpm_limit``.
    """

    provider_id: str
    api_key: str
    endpoint: str
    body_transform: BodyTransform
    extract_content: ContentExtractor
    parse_delta: DeltaParser
    priority: int = 10
    default_model: str = ""
    auth_scheme: AuthScheme = AuthScheme.BEARER
    auth_header: str = "Authorization"
    extra_headers: dict[str, str] = field(default_factory=dict)
    stream_endpoint: str = ""
    key_pattern: str = ""
    test_endpoint: str = ""
    test_method: str = "GET"
    test_body: dict[str, Any] | None = None
    timeout_s: float = 30.0
    rpm_limit: int = 50
    rate_window_s: float = 60.0

    @property
    def has_key(self) -> bool:
        return bool(self.api_key and self.api_key.strip())

    def url_for(self, model: str, *, stream: bool = False) -> str:
        template = self.stream_endpoint if stream and self.stream_endpoint else self.endpoint
        return template.replace("{model}", model)

    def auth(self) -> tuple[dict[str, str], dict[str, str]]:
        """Return (headers, query params) carrying the credential."""
        key = self.api_key.strip()
        if self.auth_scheme == AuthScheme.BEARER:
            return {"Authorization": f"Bearer {key}"}, {}
        if self.auth_scheme == AuthScheme.HEADER:
            return {self.auth_header: key}, {}
        return {}, {self.auth_header: key}


@dataclass
class ProviderHealth:
    """Read-only snapshot of a provider's current health."""

    provider_id: str
    healthy: bool = True
    configured: bool = True
    circuit_state: str = CircuitState.CLOSED.value
    consecutive_failures: int = 0
    requests_in_window: int = 0
    rate_limit: int = 0
    last_connection_ok: bool | None = None
