"""LLM provider catalogue — one ProviderSpec per supported upstream.

Each provider's wire format is captured by three pure functions (request
body, non-streamed content extraction, stream delta parsing).  Retries,
circuit breaking, rate limiting and failover live in
``relay.shared.providers`` and are not repeated here.
"""

from __future__ import annotations

from typing import Any

from relay.config import Settings
from relay.domain.entities import ChatRequest
from relay.domain.enums import AuthScheme, Role
from relay.shared.providers.stream import (
    parse_anthropic_delta,
    parse_gemini_delta,
    parse_openai_delta,
)
from relay.shared.providers.types import ProviderSpec, RetryConfig

ANTHROPIC_API_VERSION = "2023-06-01"
XAI_API_VERSION = "2023-11-01"


# ── OpenAI-compatible (OpenAI, Groq, xAI, Perplexity) ────────
def openai_body(request: ChatRequest, model: str) -> dict[str, Any]:
    return {
        "model": model,
        "messages": [m.to_dict() for m in request.messages],
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "stream": request.stream,
    }


def openai_content(data: Any) -> str | None:
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    return content if isinstance(content, str) else None


# ── Anthropic ────────────────────────────────────────────────
def anthropic_body(request: ChatRequest, model: str) -> dict[str, Any]:
    system = "\n\n".join(m.content for m in request.messages if m.role == Role.SYSTEM)
    body: dict[str, Any] = {
        "model": model,
        "messages": [m.to_dict() for m in request.messages if m.role != Role.SYSTEM],
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "stream": request.stream,
    }
    if system:
        body["system"] = system
    return body


def anthropic_content(data: Any) -> str | None:
    blocks = data.get("content") if isinstance(data, dict) else None
    if not isinstance(blocks, list):
        return None
    text = "".join(
        b["text"]
        for b in blocks
        if isinstance(b, dict) and b.get("type", "text") == "text" and isinstance(b.get("text"), str)
    )
    return text or None


# ── Google Gemini ────────────────────────────────────────────
def gemini_body(request: ChatRequest, model: str) -> dict[str, Any]:
    system = "\n\n".join(m.content for m in request.messages if m.role == Role.SYSTEM)
    body: dict[str, Any] = {
        "contents": [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
            if m.role != Role.SYSTEM
        ],
        "generationConfig": {
            "temperature": request.temperature,
            "maxOutputTokens": request.max_tokens,
        },
    }
    if system:
        body["system_instruction"] = {"parts": [{"text": system}]}
    return body


def gemini_content(data: Any) -> str | None:
    return parse_gemini_delta(data)


# ── Catalogue ────────────────────────────────────────────────
def build_provider_specs(settings: Settings) -> list[ProviderSpec]:
    """Build the ProviderSpec list from settings values."""
    priority = settings.priority_map
    timeout = settings.provider_timeout_seconds
    window = settings.rate_limit_window_seconds
    openai_base = settings.openai_base_url.rstrip("/")
    gemini_base = "https://generativelanguage.googleapis.com/v1beta/models"

    return [
        ProviderSpec(
            provider_id="openai",
            api_key=settings.openai_api_key,
            endpoint=f"{openai_base}/chat/completions",
            body_transform=openai_body,
            extract_content=openai_content,
            parse_delta=parse_openai_delta,
            priority=priority.get("openai", 10),
            default_model=settings.openai_model,
            test_endpoint=f"{openai_base}/models",
            timeout_s=timeout,
            rpm_limit=settings.openai_rpm,
            rate_window_s=window,
        ),
        ProviderSpec(
            provider_id="anthropic",
            api_key=settings.anthropic_api_key,
            endpoint="https://api.anthropic.com/v1/messages",
            body_transform=anthropic_body,
            extract_content=anthropic_content,
            parse_delta=parse_anthropic_delta,
            priority=priority.get("anthropic", 10),
            default_model=settings.anthropic_model,
            auth_scheme=AuthScheme.HEADER,
            auth_header="x-api-key",
            extra_headers={"anthropic-version": ANTHROPIC_API_VERSION},
            test_endpoint="https://api.anthropic.com/v1/messages",
            test_method="POST",
            test_body={
                "model": settings.anthropic_model,
                "max_tokens": 10,
                "messages": [{"role": "user", "content": "Hello"}],
            },
            timeout_s=timeout,
            rpm_limit=settings.anthropic_rpm,
            rate_window_s=window,
        ),
        ProviderSpec(
            provider_id="groq",
            api_key=settings.groq_api_key,
            endpoint="https://api.groq.com/openai/v1/chat/completions",
            body_transform=openai_body,
            extract_content=openai_content,
            parse_delta=parse_openai_delta,
            priority=priority.get("groq", 10),
            default_model=settings.groq_model,
            test_endpoint="https://api.groq.com/openai/v1/models",
            timeout_s=timeout,
            rpm_limit=settings.groq_rpm,
            rate_window_s=window,
        ),
        ProviderSpec(
            provider_id="xai",
            api_key=settings.xai_api_key,
            endpoint="https://api.x.ai/v1/chat/completions",
            body_transform=openai_body,
            extract_content=openai_content,
            parse_delta=parse_openai_delta,
            priority=priority.get("xai", 10),
            default_model=settings.xai_model,
            extra_headers={"X-API-Version": XAI_API_VERSION},
            test_endpoint="https://api.x.ai/v1/models",
            timeout_s=timeout,
            rpm_limit=settings.xai_rpm,
            rate_window_s=window,
        ),
        ProviderSpec(
            provider_id="perplexity",
            api_key=settings.perplexity_api_key,
            endpoint="https://api.perplexity.ai/chat/completions",
            body_transform=openai_body,
            extract_content=openai_content,
            parse_delta=parse_openai_delta,
            priority=priority.get("perplexity", 10),
            default_model=settings.perplexity_model,
            test_endpoint="https://api.perplexity.ai/chat/models",
            timeout_s=timeout,
            rpm_limit=settings.perplexity_rpm,
            rate_window_s=window,
        ),
        ProviderSpec(
            provider_id="google",
            api_key=settings.google_api_key,
            endpoint=f"{gemini_base}/{{model}}:generateContent",
            stream_endpoint=f"{gemini_base}/{{model}}:streamGenerateContent?alt=sse",
            body_transform=gemini_body,
            extract_content=gemini_content,
            parse_delta=parse_gemini_delta,
            priority=priority.get("google", 10),
            default_model=settings.google_model,
            auth_scheme=AuthScheme.QUERY,
            auth_header="key",
            test_endpoint="https://generativelanguage.googleapis.com/v1/models",
            timeout_s=timeout,
            rpm_limit=settings.google_rpm,
            rate_window_s=window,
        ),
    ]


def build_retry_config(settings: Settings) -> RetryConfig:
    return RetryConfig(
        max_retries=settings.retry_max_retries,
        initial_delay=settings.retry_initial_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        backoff_factor=settings.retry_backoff_factor,
        jitter_factor=settings.retry_jitter_factor,
        circuit_reset_timeout=settings.circuit_reset_timeout_seconds,
        half_open_max_attempts=settings.circuit_half_open_max_attempts,
        server_failure_threshold=settings.circuit_server_failure_threshold,
        network_failure_threshold=settings.circuit_network_failure_threshold,
        network_wait_timeout=settings.network_wait_timeout_seconds,
        network_poll_interval=settings.network_poll_interval_seconds,
    )
