"""Tests for the provider catalogue built from settings."""

from __future__ import annotations

import dataclasses

import httpx
import pytest

from relay.adapters.outbound.llm import (
    ANTHROPIC_API_VERSION,
    anthropic_body,
    anthropic_content,
    build_provider_specs,
    build_retry_config,
    gemini_body,
    gemini_content,
    openai_body,
    openai_content,
)
from relay.config import get_settings
from relay.domain.entities import ChatRequest
from relay.domain.enums import AuthScheme
from relay.shared.providers.chain import ProviderFallbackChain
from relay.shared.providers.types import ProviderSpec

from fakes import Recorder, sse_body

GOOGLE_KEY = "AIza" + "k" * 35


@pytest.fixture
def transcript() -> ChatRequest:
    return ChatRequest.from_dicts(
        [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Bye"},
        ],
        temperature=0.2,
        max_tokens=64,
    )


@pytest.fixture
def specs() -> dict[str, ProviderSpec]:
    settings = get_settings(
        openai_api_key="sk-" + "o" * 40,
        anthropic_api_key="sk-ant-" + "a" * 30,
        groq_api_key="",
        google_api_key=GOOGLE_KEY,
        openai_base_url="https://proxy.example.com/v1/",
    )
    return {s.provider_id: s for s in build_provider_specs(settings)}


# ═══════════════════════════════════════════════════════════════
#  Catalogue
# ═══════════════════════════════════════════════════════════════
class TestCatalogue:
    def test_all_providers_present_with_priorities(self, specs) -> None:
        assert set(specs) == {"openai", "anthropic", "groq", "xai", "perplexity", "google"}
        ranks = {pid: spec.priority for pid, spec in specs.items()}
        assert ranks == {
            "openai": 1,
            "groq": 2,
            "perplexity": 3,
            "anthropic": 4,
            "xai": 5,
            "google": 6,
        }

    def test_unset_keys_are_unconfigured(self, specs) -> None:
        assert specs["openai"].has_key
        assert not specs["groq"].has_key

    def test_openai_base_url_override(self, specs) -> None:
        assert specs["openai"].endpoint == "https://proxy.example.com/v1/chat/completions"
        assert specs["openai"].test_endpoint == "https://proxy.example.com/v1/models"

    def test_anthropic_uses_header_auth(self, specs) -> None:
        spec = specs["anthropic"]
        headers, params = spec.auth()
        assert spec.auth_scheme == AuthScheme.HEADER
        assert headers == {"x-api-key": "sk-ant-" + "a" * 30}
        assert params == {}
        assert spec.extra_headers["anthropic-version"] == ANTHROPIC_API_VERSION
        assert spec.test_method == "POST"

    def test_google_uses_query_auth_and_model_in_path(self, specs) -> None:
        spec = specs["google"]
        headers, params = spec.auth()
        assert headers == {}
        assert params == {"key": GOOGLE_KEY}
        assert spec.url_for("gemini-2.0-flash").endswith("/gemini-2.0-flash:generateContent")
        assert spec.url_for("gemini-2.0-flash", stream=True).endswith(
            "/gemini-2.0-flash:streamGenerateContent?alt=sse"
        )

    def test_retry_config_from_settings(self) -> None:
        cfg = build_retry_config(
            get_settings(retry_max_retries=5, circuit_half_open_max_attempts=2)
        )
        assert cfg.max_retries == 5
        assert cfg.half_open_max_attempts == 2
        assert cfg.initial_delay == pytest.approx(0.3)

    def test_settings_reject_inverted_delays(self) -> None:
        with pytest.raises(ValueError):
            get_settings(retry_initial_delay_seconds=5.0, retry_max_delay_seconds=1.0)


# ═══════════════════════════════════════════════════════════════
#  Wire formats
# ═══════════════════════════════════════════════════════════════
class TestWireFormats:
    def test_openai_body(self, transcript) -> None:
        body = openai_body(transcript, "gpt-4o")
        assert body["model"] == "gpt-4o"
        assert body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert body["temperature"] == 0.2
        assert body["max_tokens"] == 64
        assert body["stream"] is False

    def test_anthropic_body_lifts_system_prompt(self, transcript) -> None:
        body = anthropic_body(transcript, "claude-3-5-haiku-latest")
        assert body["system"] == "Be brief."
        assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]

    def test_gemini_body_maps_roles(self, transcript) -> None:
        body = gemini_body(transcript, "gemini-2.0-flash")
        assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
        assert body["system_instruction"] == {"parts": [{"text": "Be brief."}]}
        assert body["generationConfig"]["maxOutputTokens"] == 64

    def test_content_extractors(self) -> None:
        assert openai_content({"choices": [{"message": {"content": "a"}}]}) == "a"
        assert openai_content({"choices": []}) is None
        assert anthropic_content({"content": [{"type": "text", "text": "b"}]}) == "b"
        assert anthropic_content({"content": [{"type": "tool_use", "id": "t"}]}) is None
        assert gemini_content({"candidates": [{"content": {"parts": [{"text": "c"}]}}]}) == "c"


# ═══════════════════════════════════════════════════════════════
#  Through the chain
# ═══════════════════════════════════════════════════════════════
class TestGoogleStreamingRequest:
    @pytest.mark.asyncio
    async def test_key_and_alt_params_are_merged(self, specs, fast_retry_config) -> None:
        base = "https://google.test/v1beta/models"
        google = dataclasses.replace(
            specs["google"],
            endpoint=f"{base}/{{model}}:generateContent",
            stream_endpoint=f"{base}/{{model}}:streamGenerateContent?alt=sse",
        )
        body = sse_body({"candidates": [{"content": {"parts": [{"text": "hola"}]}}]})
        rec = Recorder({"google.test": lambda request: httpx.Response(200, content=body)})
        client = httpx.AsyncClient(transport=httpx.MockTransport(rec))
        chain = ProviderFallbackChain(
            [google], retry_config=fast_retry_config, client=client, default_provider="google"
        )
        request = ChatRequest.from_dicts(
            [{"role": "user", "content": "Hi"}], model="gemini-2.0-flash"
        )

        seen: list[str] = []
        assert await chain.chat(request, on_progress=seen.append) == "hola"
        sent = rec.calls[0]
        assert sent.url.path.endswith("/gemini-2.0-flash:streamGenerateContent")
        assert sent.url.params["alt"] == "sse"
        assert sent.url.params["key"] == GOOGLE_KEY
        assert seen == ["hola"]
        await client.aclose()
