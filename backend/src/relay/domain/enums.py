"""Domain enumerations for the chat relay."""

from __future__ import annotations

import enum


class Role(str, enum.Enum):
    """Speaker of a single chat turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ErrorClass(str, enum.Enum):
    """Failure classes used by the retry engine and fallback chain."""

    NETWORK = "network"
    SERVICE = "service"
    TERMINAL = "terminal"
    CIRCUIT = "circuit"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorClass.NETWORK, ErrorClass.SERVICE)


class AuthScheme(str, enum.Enum):
    """Where a provider expects its credential."""

    BEARER = "bearer"
    HEADER = "header"
    QUERY = "query"


class ModelTier(str, enum.Enum):
    """Capability band picked for a request that names no model."""

    BASELINE = "baseline"
    STANDARD = "standard"
    ADVANCED = "advanced"
    SUPERIOR = "superior"
