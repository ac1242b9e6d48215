"""LLM Relay — Application Configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "llm-relay"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ── Provider credentials ─────────────────────────────────
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    groq_api_key: str = ""
    xai_api_key: str = ""
    perplexity_api_key: str = ""
    google_api_key: str = ""

    # ── Models used when a provider is reached by fallback ───
    openai_model: str = "gpt-4o-mini"
    anthropic_model: str = "claude-3.5-haiku-latest"
    groq_model: str = "llama-3.3-70b-versatile"
    xai_model: str = "grok-2-latest"
    perplexity_model: str = "sonar-reasoning-pro"
    google_model: str = "gemini-2.0-flash"

    openai_base_url: str = "https://api.openai.com/v1"

    # ── Routing ──────────────────────────────────────────────
    llm_provider_priority: str = "openai,groq,perplexity,anthropic,xai,google"
    llm_default_provider: str = "openai"
    # Pick a model by query complexity when a request names none.
    llm_auto_select_model: bool = True

    # ── Retry + circuit breaker ──────────────────────────────
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 0.3
    retry_max_delay_seconds: float = 10.0
    retry_backoff_factor: float = 2.0
    retry_jitter_factor: float = 0.1
    circuit_reset_timeout_seconds: float = 30.0
    circuit_half_open_max_attempts: int = 3
    circuit_server_failure_threshold: int = 3
    circuit_network_failure_threshold: int = 5

    # ── Rate limits (admissions per window) ──────────────────
    rate_limit_window_seconds: float = 60.0
    openai_rpm: int = 50
    anthropic_rpm: int = 50
    groq_rpm: int = 30
    xai_rpm: int = 50
    perplexity_rpm: int = 50
    google_rpm: int = 60

    # ── Timeouts ─────────────────────────────────────────────
    provider_timeout_seconds: float = 30.0
    connection_test_timeout_seconds: float = 10.0
    chat_request_timeout_seconds: float = 120.0

    # ── Connectivity ─────────────────────────────────────────
    connectivity_probe_url: str = ""
    connectivity_probe_timeout_seconds: float = 5.0
    network_wait_timeout_seconds: float = 30.0
    network_poll_interval_seconds: float = 2.0
    connection_status_ttl_seconds: float = 300.0

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def priority_map(self) -> dict[str, int]:
        """provider_id → rank (1 = tried first) parsed from ``llm_provider_priority``."""
        ranks: dict[str, int] = {}
        for idx, name in enumerate(self.llm_provider_priority.split(",")):
            name = name.strip().lower()
            if name and name not in ranks:
                ranks[name] = idx + 1
        return ranks

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("retry_jitter_factor")
    @classmethod
    def _validate_jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("retry_jitter_factor must be within [0, 1]")
        return v

    @model_validator(mode="after")
    def _validate_delays(self) -> Settings:
        if self.retry_initial_delay_seconds > self.retry_max_delay_seconds:
            raise ValueError(
                "retry_initial_delay_seconds must not exceed retry_max_delay_seconds"
            )
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
