"""Prometheus metrics for the LLM relay."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── HTTP metrics ─────────────────────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Provider calls ───────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "llm_provider_requests_total",
    "Provider call outcomes as seen by the fallback chain",
    ["provider", "status"],  # success / failure
)

PROVIDER_LATENCY = Histogram(
    "llm_provider_latency_seconds",
    "Latency of a provider call including retries",
    ["provider"],
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

FALLBACKS_TOTAL = Counter(
    "llm_fallbacks_total",
    "Times the chain moved past a failed provider",
    ["from_provider"],
)

STREAM_CHUNKS = Counter(
    "llm_stream_deltas_total",
    "Text deltas delivered by the stream normalizer",
    ["provider"],
)

# ── Resilience ───────────────────────────────────────────────
RETRY_ATTEMPTS = Counter(
    "llm_retry_attempts_total",
    "Retries scheduled by the retry engine",
    ["provider"],
)

CIRCUIT_TRANSITIONS = Counter(
    "llm_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "state"],
)

CIRCUIT_STATE = Gauge(
    "llm_circuit_state",
    "Current circuit state (0=closed, 1=half_open, 2=open)",
    ["provider"],
)

RATE_LIMIT_WAITS = Counter(
    "llm_rate_limit_waits_total",
    "Acquisitions that had to queue for a rate-limit slot",
    ["provider"],
)
