"""Integration tests for API endpoints using FastAPI TestClient."""

from __future__ import annotations

import httpx
import orjson
import pytest
from fastapi.testclient import TestClient

from relay.config import get_settings
from relay.dependencies import provide_chain
from relay.main import create_app
from relay.shared.providers.cancellation import CancellationToken
from relay.shared.providers.chain import ProviderFallbackChain
from relay.shared.providers.types import RetryConfig

from fakes import Recorder, completion, make_spec, sse_body

HELLO = {"messages": [{"role": "user", "content": "Hello"}]}


def _upstream(request: httpx.Request) -> httpx.Response:
    """alpha always fails with 500; beta answers, streamed when asked to."""
    if request.url.host == "alpha.test":
        return httpx.Response(500, json={"error": {"message": "overloaded"}})
    if request.url.path.endswith("/models"):
        return httpx.Response(200, json={"data": []})
    if orjson.loads(request.content).get("stream"):
        body = sse_body(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})
    return httpx.Response(200, json=completion("Hello from beta"))


@pytest.fixture
def settings():
    return get_settings(prometheus_enabled=True, chat_request_timeout_seconds=5.0)


@pytest.fixture
def chain():
    specs = [
        make_spec("alpha", priority=1),
        make_spec("beta", priority=2),
        make_spec("gamma", priority=3, api_key=""),
    ]
    rec = Recorder({"alpha.test": _upstream, "beta.test": _upstream})
    return ProviderFallbackChain(
        specs,
        retry_config=RetryConfig(
            max_retries=1, initial_delay=0.0, max_delay=0.0, jitter_factor=0.0
        ),
        client=httpx.AsyncClient(transport=httpx.MockTransport(rec)),
    )


@pytest.fixture
def app(settings, chain):
    application = create_app(settings)
    application.dependency_overrides[provide_chain] = lambda: chain
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
class TestHealthEndpoints:
    def test_health_check(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert "version" in data
        assert data["providers"] == {"alpha": True, "beta": True, "gamma": False}

    def test_health_degraded_without_providers(self, settings):
        app = create_app(settings)
        empty = ProviderFallbackChain([make_spec("alpha", api_key="")])
        app.dependency_overrides[provide_chain] = lambda: empty

        resp = TestClient(app).get("/api/v1/health")
        assert resp.json()["status"] == "degraded"

    def test_metrics_endpoint(self, client):
        client.get("/api/v1/health")
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        assert b"http_requests_total" in resp.content

    def test_request_id_echoed(self, client):
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"


# ═══════════════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════════════
class TestChatEndpoint:
    def test_chat_falls_back_to_beta(self, client):
        resp = client.post("/api/v1/chat", json=HELLO)
        assert resp.status_code == 200
        data = resp.json()
        assert data["content"] == "Hello from beta"
        assert data["provider"] == "beta"
        assert data["model"] == "beta-default"
        assert data["attempted"] == ["alpha", "beta"]

    def test_chat_stream(self, client):
        resp = client.post("/api/v1/chat", json={**HELLO, "stream": True})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        events = [
            line[len("data: "):]
            for line in resp.text.splitlines()
            if line.startswith("data: ")
        ]
        assert events[-1] == "[DONE]"
        payloads = [orjson.loads(e) for e in events[:-1]]
        assert payloads[:2] == [{"delta": "Hel"}, {"delta": "lo"}]
        assert payloads[2] == {"provider": "beta", "model": "beta-default"}

    @pytest.mark.parametrize("stream", [False, True])
    def test_chat_deadline_disarmed_after_response(self, client, monkeypatch, stream):
        issued: list[CancellationToken] = []
        original = CancellationToken.with_timeout

        def tracking(seconds: float) -> CancellationToken:
            token = original(seconds)
            issued.append(token)
            return token

        monkeypatch.setattr(CancellationToken, "with_timeout", staticmethod(tracking))

        resp = client.post("/api/v1/chat", json={**HELLO, "stream": stream})
        assert resp.status_code == 200
        assert len(issued) == 1
        assert not issued[0].armed
        assert not issued[0].cancelled

    def test_chat_exhausted_returns_503(self, settings):
        app = create_app(settings)
        failing = ProviderFallbackChain(
            [make_spec("alpha")],
            retry_config=RetryConfig(max_retries=0, initial_delay=0.0, max_delay=0.0),
            client=httpx.AsyncClient(transport=httpx.MockTransport(_upstream)),
        )
        app.dependency_overrides[provide_chain] = lambda: failing

        resp = TestClient(app).post("/api/v1/chat", json=HELLO)
        assert resp.status_code == 503
        body = resp.json()
        assert body["code"] == "CONFIGURATION_ERROR"
        assert "All available providers failed" in body["message"]

    def test_chat_without_providers_returns_503(self, settings):
        app = create_app(settings)
        empty = ProviderFallbackChain([make_spec("alpha", api_key="")])
        app.dependency_overrides[provide_chain] = lambda: empty

        resp = TestClient(app).post("/api/v1/chat", json=HELLO)
        assert resp.status_code == 503
        assert "No available API providers" in resp.json()["message"]

    def test_chat_rejects_empty_transcript(self, client):
        resp = client.post("/api/v1/chat", json={"messages": []})
        assert resp.status_code == 422

    def test_chat_rejects_unknown_role(self, client):
        resp = client.post(
            "/api/v1/chat", json={"messages": [{"role": "tool", "content": "x"}]}
        )
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════════════════
#  Providers
# ═══════════════════════════════════════════════════════════════
class TestProviderEndpoints:
    def test_provider_health(self, client):
        resp = client.get("/api/v1/providers/health")
        assert resp.status_code == 200
        assert resp.json() == {"alpha": True, "beta": True, "gamma": False}

    def test_provider_status(self, client):
        resp = client.get("/api/v1/providers/status")
        assert resp.status_code == 200
        rows = {row["provider_id"]: row for row in resp.json()}
        assert rows["alpha"]["circuit_state"] == "closed"
        assert rows["gamma"]["configured"] is False
        assert rows["beta"]["rate_limit"] == 100

    def test_connection_test(self, client):
        resp = client.post("/api/v1/providers/beta/test")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Successfully connected to beta API"}

        failed = client.post("/api/v1/providers/alpha/test").json()
        assert failed["success"] is False
        assert "500" in failed["message"]

    def test_connection_test_unconfigured(self, client):
        resp = client.post("/api/v1/providers/gamma/test")
        assert resp.json()["message"] == "No API key configured for gamma"

    def test_reset_provider(self, client, chain):
        client.post("/api/v1/providers/alpha/test")
        assert client.get("/api/v1/providers/health").json()["alpha"] is False

        resp = client.post("/api/v1/providers/alpha/reset")
        assert resp.status_code == 200
        assert resp.json() == {"status": "reset", "provider_id": "alpha"}
        assert chain.get_provider_health()["alpha"] is True

    def test_reset_unknown_provider(self, client):
        resp = client.post("/api/v1/providers/omega/reset")
        assert resp.status_code == 404
