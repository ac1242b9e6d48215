"""Health, Chat, Providers — REST routers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import orjson
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from relay.application.dtos import (
    ChatRequestIn,
    ChatResponse,
    ConnectionTestResponse,
    ErrorResponse,
    HealthResponse,
    ProviderResetResponse,
    ProviderStatusResponse,
)
from relay.config import Settings
from relay.dependencies import provide_chain, provide_settings
from relay.domain.entities import ChatRequest
from relay.domain.exceptions import ChatError
from relay.shared.providers.cancellation import CancellationToken
from relay.shared.providers.chain import ProviderFallbackChain

logger = structlog.get_logger(__name__)


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(provide_settings),
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> HealthResponse:
    providers = chain.get_provider_health()
    overall = "ok" if any(providers.values()) else "degraded"
    return HealthResponse(
        status=overall,
        environment=settings.app_env.value,
        providers=providers,
    )


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
chat_router = APIRouter(tags=["Chat"])


@chat_router.post(
    "/chat",
    response_model=ChatResponse,
    responses={503: {"model": ErrorResponse}, 499: {"model": ErrorResponse}},
)
async def chat(
    body: ChatRequestIn,
    settings: Settings = Depends(provide_settings),
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> ChatResponse | StreamingResponse:
    """Send a transcript through the fallback chain.

    With ``stream: true`` the response is ``text/event-stream``: one
    ``data: {"delta": ...}`` line per text fragment, then ``data: [DONE]``.
    """
    request = body.to_domain()
    token = CancellationToken.with_timeout(settings.chat_request_timeout_seconds)

    if request.stream:
        return StreamingResponse(
            _stream_chat(chain, request, token),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        outcome = await chain.chat_outcome(request, cancel_token=token)
    finally:
        token.disarm()
    return ChatResponse(
        content=outcome.content,
        provider=outcome.provider_id,
        model=outcome.model,
        attempted=outcome.attempted,
    )


def _sse(payload: dict | str) -> bytes:  # type: ignore[type-arg]
    data = payload if isinstance(payload, str) else orjson.dumps(payload).decode()
    return f"data: {data}\n\n".encode()


async def _stream_chat(
    chain: ProviderFallbackChain,
    request: ChatRequest,
    token: CancellationToken,
) -> AsyncIterator[bytes]:
    """Bridge ``on_progress`` callbacks to an SSE body; cancels the call on disconnect."""
    queue: asyncio.Queue[str | None] = asyncio.Queue()
    task = asyncio.create_task(chain.chat_outcome(request, queue.put_nowait, cancel_token=token))
    task.add_done_callback(lambda _: queue.put_nowait(None))

    try:
        while True:
            delta = await queue.get()
            if delta is None:
                break
            yield _sse({"delta": delta})

        try:
            outcome = task.result()
        except ChatError as exc:
            logger.warning("chat_stream_failed", code=exc.code, error=exc.message)
            yield _sse({"error": {"code": exc.code, "message": exc.message}})
        else:
            yield _sse({"provider": outcome.provider_id, "model": outcome.model})
        yield _sse("[DONE]")
    finally:
        if not task.done():
            token.cancel("Client disconnected.")
            task.cancel()
            logger.info("chat_stream_client_disconnected")
        token.disarm()


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
providers_router = APIRouter(prefix="/providers", tags=["Providers"])


@providers_router.get("/health")
async def provider_health(
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> dict[str, bool]:
    """provider_id → currently usable."""
    return chain.get_provider_health()


@providers_router.get("/status", response_model=list[ProviderStatusResponse])
async def provider_status(
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> list[ProviderStatusResponse]:
    """Detailed circuit / rate-window snapshot for every known provider."""
    return [
        ProviderStatusResponse(
            provider_id=h.provider_id,
            healthy=h.healthy,
            configured=h.configured,
            circuit_state=h.circuit_state,
            consecutive_failures=h.consecutive_failures,
            requests_in_window=h.requests_in_window,
            rate_limit=h.rate_limit,
            last_connection_ok=h.last_connection_ok,
        )
        for h in chain.get_health_snapshot()
    ]


@providers_router.post("/{provider_id}/test", response_model=ConnectionTestResponse)
async def test_provider_connection(
    provider_id: str,
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> ConnectionTestResponse:
    result = await chain.test_connection(provider_id)
    return ConnectionTestResponse(success=result.success, message=result.message)


@providers_router.post("/{provider_id}/reset", response_model=ProviderResetResponse)
async def reset_provider(
    provider_id: str,
    chain: ProviderFallbackChain = Depends(provide_chain),
) -> ProviderResetResponse:
    """Admin: reset circuit breaker, rate window and cached status for a provider."""
    if not chain.reset_provider(provider_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {provider_id}",
        )
    return ProviderResetResponse(provider_id=provider_id)
