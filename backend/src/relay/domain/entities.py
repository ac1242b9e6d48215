"""Per-call value types exchanged between callers and the fallback chain."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from relay.domain.enums import Role


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class ChatRequest:
    """One chat call: the ordered transcript plus routing hints.

    Attributes:
        messages:    Role/content turns, in conversation order.
        model:       Target-model hint used for provider selection ("" = default).
        stream:      Ask the provider for an incremental event stream.
        temperature: Sampling temperature forwarded to the provider.
        max_tokens:  Completion budget forwarded to the provider.
    """

    messages: tuple[ChatMessage, ...]
    model: str = ""
    stream: bool = False
    temperature: float = 0.7
    max_tokens: int = 4096

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("ChatRequest requires at least one message")

    @classmethod
    def from_dicts(cls, messages: list[dict[str, Any]], **kwargs: Any) -> ChatRequest:
        turns = tuple(
            ChatMessage(role=Role(m["role"]), content=str(m["content"])) for m in messages
        )
        return cls(messages=turns, **kwargs)

    @property
    def latest_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == Role.USER:
                return message.content
        return ""


@dataclass
class ChatOutcome:
    """Result of a successful ``chat`` call."""

    content: str
    provider_id: str
    model: str
    attempted: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionTestResult:
    success: bool
    message: str
