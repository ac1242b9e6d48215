"""Failure classification — maps raw exceptions onto the relay's error taxonomy.

The retry engine only ever reasons about ``ErrorClass``; this module is the
single place that knows how httpx, asyncio and provider error bodies look.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx

from relay.domain.enums import ErrorClass
from relay.domain.exceptions import (
    ChatError,
    NetworkError,
    ServiceError,
    TerminalClientError,
)

_NETWORK_PATTERNS = (
    "network error",
    "network request failed",
    "failed to fetch",
    "timed out",
    "timeout",
    "connection",
    "socket",
    "offline",
    "internet",
)

_TERMINAL_PATTERNS = (
    "unauthorized",
    "unauthenticated",
    "authentication failed",
    "forbidden",
    "not found",
    "invalid",
    "validation",
    "bad request",
    "constraint",
    "conflict",
    "already exists",
    "duplicate",
)

_MAX_DETAIL_CHARS = 200


def classify_status(status_code: int) -> ErrorClass:
    """Classify an HTTP status: 4xx is terminal except 408 and 429."""
    if status_code == 408:
        return ErrorClass.NETWORK
    if status_code == 429:
        return ErrorClass.SERVICE
    if 400 <= status_code < 500:
        return ErrorClass.TERMINAL
    return ErrorClass.SERVICE


def classify_error(exc: BaseException) -> ErrorClass:
    """Return the failure class for any exception raised by a provider call."""
    if isinstance(exc, asyncio.CancelledError):
        return ErrorClass.CANCELLED
    if isinstance(exc, ChatError):
        return exc.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.UnsupportedProtocol, httpx.InvalidURL)):
        return ErrorClass.TERMINAL
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.NETWORK
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return ErrorClass.NETWORK

    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    if isinstance(status, int) and status >= 400:
        return classify_status(status)

    message = str(exc).lower()
    if any(p in message for p in _NETWORK_PATTERNS):
        return ErrorClass.NETWORK
    if any(p in message for p in _TERMINAL_PATTERNS):
        return ErrorClass.TERMINAL
    return ErrorClass.SERVICE


def error_detail(body: Any) -> str:
    """Best-effort extraction of a provider's human-readable error message."""
    detail: Any = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            detail = err.get("message")
        elif isinstance(err, str):
            detail = err
        detail = detail or body.get("message")
    if not isinstance(detail, str):
        return ""
    detail = detail.strip()
    if len(detail) > _MAX_DETAIL_CHARS:
        detail = detail[: _MAX_DETAIL_CHARS - 3] + "..."
    return detail


def error_for_status(
    provider_id: str, status_code: int, reason: str = "", body: Any = None
) -> ChatError:
    """Build the typed error for a non-2xx provider response."""
    detail = error_detail(body)
    message = f"{provider_id} API request failed: {status_code} {reason}".rstrip()
    if detail:
        message = f"{message} - {detail}"

    cls = classify_status(status_code)
    if cls == ErrorClass.TERMINAL:
        return TerminalClientError(message, status_code=status_code)
    if cls == ErrorClass.NETWORK:
        return NetworkError(message)
    return ServiceError(message, status_code=status_code)


def to_chat_error(exc: BaseException, provider_id: str) -> ChatError:
    """Wrap a raw exception in the matching ``ChatError`` subclass."""
    if isinstance(exc, ChatError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        try:
            body = response.json()
        except ValueError:
            body = None
        return error_for_status(
            provider_id, response.status_code, response.reason_phrase, body
        )
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return NetworkError(
            f"Connection to {provider_id} API timed out. The service may be unavailable."
        )

    cls = classify_error(exc)
    if cls == ErrorClass.NETWORK:
        return NetworkError(
            f"Network error connecting to {provider_id} API. "
            "Please check your internet connection."
        )
    if cls == ErrorClass.TERMINAL:
        return TerminalClientError(f"{provider_id} rejected the request: {exc}")
    return ServiceError(f"{provider_id} request failed: {type(exc).__name__}: {exc}")
