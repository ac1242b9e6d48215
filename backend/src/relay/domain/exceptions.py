"""Domain-specific exception hierarchy.

Provider-facing errors inherit from ``ChatError`` so callers can catch the entire
family in one clause while still discriminating on subclass.  Every message
is written for direct display to an end user; raw provider payloads never
leak through.
"""

from __future__ import annotations

from relay.domain.enums import ErrorClass


class ChatError(Exception):
    """Base class for all relay errors."""

    error_class: ErrorClass = ErrorClass.SERVICE

    def __init__(self, message: str, *, code: str = "CHAT_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Network ──────────────────────────────────────────────────
class NetworkError(ChatError):
    """Offline, timed out, or the connection was reset."""

    error_class = ErrorClass.NETWORK

    def __init__(self, message: str, *, code: str = "NETWORK_ERROR") -> None:
        super().__init__(message, code=code)


class NetworkUnavailableError(NetworkError):
    """Connectivity did not come back in time, or the backend stayed unreachable."""

    def __init__(
        self,
        message: str = "Network unavailable. Please check your internet connection and try again.",
    ) -> None:
        super().__init__(message, code="NETWORK_UNAVAILABLE")


# ── Upstream ─────────────────────────────────────────────────
class ServiceError(ChatError):
    """5xx, rate-limited, or otherwise unclassified upstream failure."""

    error_class = ErrorClass.SERVICE

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, code="SERVICE_ERROR")


class TerminalClientError(ChatError):
    """Authentication, validation or conflict failure. Never retried."""

    error_class = ErrorClass.TERMINAL

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message, code="CLIENT_ERROR")


# ── Resilience ───────────────────────────────────────────────
class CircuitOpenError(ChatError):
    """Raised without invoking the operation while the breaker rejects calls."""

    error_class = ErrorClass.CIRCUIT

    def __init__(self, provider: str, *, recovering: bool = False) -> None:
        self.provider = provider
        self.recovering = recovering
        if recovering:
            message = (
                f"{provider} is in recovery mode. Please try again in a few moments."
            )
        else:
            message = (
                f"{provider} is temporarily unavailable due to repeated failures. "
                "Please try again in a few moments."
            )
        super().__init__(message, code="CIRCUIT_OPEN")


class ConfigurationError(ChatError):
    """No eligible provider remains in the fallback chain."""

    error_class = ErrorClass.CONFIGURATION

    def __init__(self, message: str, *, attempted: dict[str, str] | None = None) -> None:
        self.attempted = dict(attempted or {})
        super().__init__(message, code="CONFIGURATION_ERROR")

    @classmethod
    def exhausted(cls, attempted: dict[str, str]) -> ConfigurationError:
        if not attempted:
            return cls(
                "No available API providers found. "
                "Please configure at least one API key in settings."
            )
        details = "; ".join(f"{pid}: {reason}" for pid, reason in attempted.items())
        return cls(
            f"All available providers failed ({details}). "
            "Please try again later or configure additional API keys.",
            attempted=attempted,
        )


class RequestCancelledError(ChatError):
    """The caller cancelled the request. Never counted as a provider failure."""

    error_class = ErrorClass.CANCELLED

    def __init__(self, message: str = "Request was cancelled.") -> None:
        super().__init__(message, code="REQUEST_CANCELLED")


# ── Caller ───────────────────────────────────────────────────
class ProgressCallbackError(Exception):
    """The caller's ``on_progress`` callback raised while a stream was being relayed.

    Not a ``ChatError``: it is never retried or counted against a circuit, and
    the fallback chain lets it propagate.
    The original exception is chained as ``__cause__``.
    """

    def __init__(self, provider: str, error: BaseException) -> None:
        self.provider = provider
        super().__init__(
            f"on_progress callback raised {type(error).__name__} "
            f"while relaying {provider}: {error}"
        )
