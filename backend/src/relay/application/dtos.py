"""Data Transfer Objects — Pydantic models for API boundaries.

DTOs handle serialisation, validation, and documentation.  They adapt
between the HTTP surface and the relay's domain value types.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from relay.domain.entities import ChatMessage, ChatRequest
from relay.domain.enums import Role


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    providers: dict[str, bool] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
class ChatMessageIn(BaseModel):
    role: Role
    content: str = Field(..., max_length=200_000)


class ChatRequestIn(BaseModel):
    messages: list[ChatMessageIn] = Field(..., min_length=1)
    model: str = ""
    stream: bool = False
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(4096, ge=1, le=200_000)

    def to_domain(self) -> ChatRequest:
        return ChatRequest(
            messages=tuple(ChatMessage(role=m.role, content=m.content) for m in self.messages),
            model=self.model,
            stream=self.stream,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )


class ChatResponse(BaseModel):
    content: str
    provider: str
    model: str
    attempted: list[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
class ConnectionTestResponse(BaseModel):
    success: bool
    message: str


class ProviderStatusResponse(BaseModel):
    provider_id: str
    healthy: bool
    configured: bool
    circuit_state: str
    consecutive_failures: int
    requests_in_window: int
    rate_limit: int
    last_connection_ok: bool | None = None


class ProviderResetResponse(BaseModel):
    status: str = "reset"
    provider_id: str
