"""Provider fallback chain — the main entry-point for chat calls.

Composes ModelRouter, RateLimiter, RetryEngine and StreamNormalizer into one
resilience layer.  A request is routed to the provider serving its model;
when that provider fails for good (retries exhausted, circuit open, terminal
rejection) the next eligible provider is tried with its own default model.

Breaker and limiter state is per provider and shared by every request going
through this chain instance.  Within one request only one provider attempt is
ever in flight.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any, Sequence

import httpx
import structlog

from relay.domain.entities import ChatOutcome, ChatRequest, ConnectionTestResult
from relay.domain.exceptions import (
    ChatError,
    ConfigurationError,
    ProgressCallbackError,
    RequestCancelledError,
    ServiceError,
)
from relay.ports.outbound import ConnectivityProbe
from relay.shared.observability.metrics import (
    FALLBACKS_TOTAL,
    PROVIDER_LATENCY,
    PROVIDER_REQUESTS,
)
from relay.shared.providers.cancellation import CancellationToken, guarded
from relay.shared.providers.classification import error_detail, error_for_status
from relay.shared.providers.credentials import is_key_eligible, loose_validate_api_key
from relay.shared.providers.health import ConnectionStatusCache
from relay.shared.providers.rate_limiter import RateLimiter
from relay.shared.providers.retry import RetryEngine
from relay.shared.providers.router import DEFAULT_RULES, ModelRouter, RoutingRule
from relay.shared.providers.stream import ProgressCallback, StreamNormalizer
from relay.shared.providers.types import (
    CircuitState,
    ProviderHealth,
    ProviderSpec,
    RetryConfig,
)

logger = structlog.get_logger(__name__)


class ProviderFallbackChain:
    """Resilient chat client over a set of provider specs.

    Usage::

        chain = ProviderFallbackChain(build_provider_specs(settings), probe=probe)
        text = await chain.chat(ChatRequest.from_dicts(messages, model="gpt-4o"))
        await chain.aclose()
    """

    def __init__(
        self,
        providers: Sequence[ProviderSpec],
        *,
        probe: ConnectivityProbe | None = None,
        retry_config: RetryConfig | None = None,
        rules: Sequence[RoutingRule] = DEFAULT_RULES,
        default_provider: str = "openai",
        client: httpx.AsyncClient | None = None,
        connection_ttl_s: float = 300.0,
        test_timeout_s: float = 10.0,
        retry_engines: dict[str, RetryEngine] | None = None,
        rate_limiters: dict[str, RateLimiter] | None = None,
        auto_select_model: bool = True,
    ) -> None:
        self._router = ModelRouter(providers, rules=rules, default_provider=default_provider)
        self._auto_select_model = auto_select_model
        self._probe = probe
        self._test_timeout = test_timeout_s
        self._connection_status = ConnectionStatusCache(connection_ttl_s)

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

        engines = retry_engines or {}
        limiters = rate_limiters or {}
        self._engines: dict[str, RetryEngine] = {}
        self._limiters: dict[str, RateLimiter] = {}
        for spec in self._router.providers:
            pid = spec.provider_id
            self._engines[pid] = engines.get(pid) or RetryEngine(
                pid, retry_config, probe=probe
            )
            self._limiters[pid] = limiters.get(pid) or RateLimiter(
                pid, max_requests=spec.rpm_limit, window_seconds=spec.rate_window_s
            )

    @property
    def router(self) -> ModelRouter:
        return self._router

    def engine(self, provider_id: str) -> RetryEngine:
        return self._engines[provider_id]

    def limiter(self, provider_id: str) -> RateLimiter:
        return self._limiters[provider_id]

    # ── Main entry-point ─────────────────────────────────────
    async def chat(
        self,
        request: ChatRequest,
        on_progress: ProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> str:
        """Deliver ``request`` and return the full response text.

        When ``on_progress`` is given the provider is asked to stream and each
        text delta is forwarded as it arrives.

        Raises:
            ConfigurationError: No provider is configured, or every eligible one failed.
            RequestCancelledError: ``cancel_token`` fired.
            ProgressCallbackError: ``on_progress`` raised; no provider is blamed for it.
        """
        outcome = await self.chat_outcome(request, on_progress, cancel_token=cancel_token)
        return outcome.content

    async def chat_outcome(
        self,
        request: ChatRequest,
        on_progress: ProgressCallback | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> ChatOutcome:
        """Like ``chat`` but also reports which provider and model answered."""
        if not request.model and self._auto_select_model:
            request = self._with_selected_model(request)
        candidates = self._eligible_chain(request.model)
        if not candidates:
            logger.warning("no_configured_providers", model=request.model)
            raise ConfigurationError.exhausted({})

        primary = self._router.provider_for_model(request.model)
        stream = request.stream or on_progress is not None
        errors: dict[str, str] = {}
        attempted: list[str] = []

        for spec in candidates:
            pid = spec.provider_id
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            model = request.model if pid == primary and request.model else spec.default_model
            call = dataclasses.replace(request, model=model, stream=stream)
            attempted.append(pid)
            log = logger.bind(provider=pid, model=model, attempt=len(attempted))

            try:
                text = await self._attempt(spec, call, on_progress, cancel_token)
            except (RequestCancelledError, ConfigurationError, asyncio.CancelledError):
                raise
            except ProgressCallbackError:
                log.warning("progress_callback_failed")
                raise
            except ChatError as exc:
                # A repeat attempt keeps the first pass's reason.
                errors.setdefault(pid, exc.message)
                PROVIDER_REQUESTS.labels(provider=pid, status="failure").inc()
                FALLBACKS_TOTAL.labels(from_provider=pid).inc()
                log.warning("provider_attempt_failed", code=exc.code, error=exc.message)
                continue

            PROVIDER_REQUESTS.labels(provider=pid, status="success").inc()
            if len(attempted) > 1:
                log.info("provider_failover_success", failed_providers=list(errors))
            return ChatOutcome(content=text, provider_id=pid, model=model, attempted=attempted)

        logger.error("all_providers_failed", attempted=list(errors))
        raise ConfigurationError.exhausted(errors)

    def _with_selected_model(self, request: ChatRequest) -> ChatRequest:
        usable = {s.provider_id for s in self._router.providers if is_key_eligible(s)}
        selection = self._router.select_model(request.latest_user_text, usable)
        if selection is None:
            return request
        return dataclasses.replace(request, model=selection.model)

    def _eligible_chain(self, model: str) -> list[ProviderSpec]:
        """Eligible providers in attempt order; a sole provider gets one re-attempt.

        The re-attempt is rejected up front if the first pass left the circuit OPEN.
        """
        chain = [spec for spec in self._router.fallback_order(model) if is_key_eligible(spec)]
        if len(chain) == 1:
            return [chain[0], chain[0]]
        return chain

    # ── Provider-level attempt ───────────────────────────────
    async def _attempt(
        self,
        spec: ProviderSpec,
        request: ChatRequest,
        on_progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> str:
        pid = spec.provider_id
        engine = self._engines[pid]
        # Rejected calls must not spend the provider's rate window.
        engine.check_admission()
        await self._limiters[pid].acquire(cancel_token=cancel_token)

        start = time.monotonic()
        try:
            return await engine.execute(
                lambda: self._invoke(spec, request, on_progress, cancel_token),
                cancel_token=cancel_token,
            )
        finally:
            PROVIDER_LATENCY.labels(provider=pid).observe(time.monotonic() - start)

    async def _invoke(
        self,
        spec: ProviderSpec,
        request: ChatRequest,
        on_progress: ProgressCallback | None,
        cancel_token: CancellationToken | None,
    ) -> str:
        """One HTTP round-trip to ``spec``; raises httpx / ChatError on failure."""
        url = spec.url_for(request.model, stream=request.stream)
        headers, params = self._request_auth(spec)
        body = spec.body_transform(request, request.model)
        timeout = httpx.Timeout(spec.timeout_s)

        if request.stream:
            async with self._client.stream(
                "POST", url, json=body, headers=headers, params=params, timeout=timeout
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._status_error(spec, response)
                normalizer = StreamNormalizer(spec.provider_id, spec.parse_delta)
                return await normalizer.normalize(
                    response.aiter_bytes(), on_progress, cancel_token=cancel_token
                )

        response = await guarded(
            self._client.post(url, json=body, headers=headers, params=params, timeout=timeout),
            cancel_token,
        )
        if response.is_error:
            raise self._status_error(spec, response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ServiceError(
                f"Invalid response format from {spec.provider_id} API",
                status_code=response.status_code,
            ) from exc
        content = spec.extract_content(data)
        if not content:
            raise ServiceError(
                f"Invalid response format from {spec.provider_id} API",
                status_code=response.status_code,
            )
        return content

    @staticmethod
    def _request_auth(spec: ProviderSpec) -> tuple[dict[str, str], dict[str, str]]:
        auth_headers, params = spec.auth()
        headers = {"Content-Type": "application/json", **spec.extra_headers, **auth_headers}
        return headers, params

    @staticmethod
    def _status_error(spec: ProviderSpec, response: httpx.Response) -> ChatError:
        try:
            body: Any = response.json()
        except ValueError:
            body = None
        return error_for_status(
            spec.provider_id, response.status_code, response.reason_phrase, body
        )

    # ── Connection test ──────────────────────────────────────
    async def test_connection(self, provider_id: str) -> ConnectionTestResult:
        """Cheap authenticated request against the provider; never raises."""
        spec = self._router.get(provider_id)
        if spec is None:
            return ConnectionTestResult(False, f"Unknown provider: {provider_id}")
        if self._probe is not None and not self._probe.is_online():
            return ConnectionTestResult(
                False,
                "Network connection unavailable. Please check your internet connection.",
            )
        if not spec.has_key:
            return ConnectionTestResult(False, f"No API key configured for {provider_id}")
        if not loose_validate_api_key(spec.api_key):
            return ConnectionTestResult(False, f"Invalid API key format for {provider_id}")
        if not spec.test_endpoint:
            return ConnectionTestResult(
                False, f"Connection test is not supported for {provider_id}"
            )

        headers, params = self._request_auth(spec)
        try:
            response = await self._client.request(
                spec.test_method,
                spec.test_endpoint,
                headers=headers,
                params=params,
                json=spec.test_body if spec.test_method == "POST" else None,
                timeout=self._test_timeout,
            )
        except httpx.TimeoutException:
            return self._connection_failed(
                provider_id,
                f"Connection to {provider_id} API timed out. The service may be unavailable.",
            )
        except httpx.TransportError:
            return self._connection_failed(
                provider_id,
                f"Network error connecting to {provider_id} API. "
                "Please check your internet connection.",
            )
        except httpx.HTTPError as exc:
            return self._connection_failed(provider_id, str(exc))

        self._connection_status.record(provider_id, response.is_success)
        if response.is_success:
            logger.info("connection_test_succeeded", provider=provider_id)
            return ConnectionTestResult(True, f"Successfully connected to {provider_id} API")

        logger.warning(
            "connection_test_failed", provider=provider_id, status_code=response.status_code
        )
        try:
            detail = error_detail(response.json())
        except ValueError:
            detail = ""
        message = f"Failed to connect to {provider_id} API: {response.status_code} {response.reason_phrase}"
        if detail:
            message = f"{message} - {detail}"
        return ConnectionTestResult(False, message)

    def _connection_failed(self, provider_id: str, message: str) -> ConnectionTestResult:
        self._connection_status.record(provider_id, False)
        logger.warning("connection_test_error", provider=provider_id, error=message)
        return ConnectionTestResult(
            False, f"Error testing connection to {provider_id}: {message}"
        )

    # ── Health observation ───────────────────────────────────
    def get_provider_health(self) -> dict[str, bool]:
        """provider_id → usable right now (configured, circuit closed, last test not failed)."""
        return {h.provider_id: h.healthy for h in self.get_health_snapshot()}

    def get_health_snapshot(self) -> list[ProviderHealth]:
        results: list[ProviderHealth] = []
        for spec in self._router.providers:
            pid = spec.provider_id
            circuit = self._engines[pid].snapshot()
            limiter = self._limiters[pid]
            last_ok = self._connection_status.get(pid)
            configured = is_key_eligible(spec)
            results.append(
                ProviderHealth(
                    provider_id=pid,
                    healthy=configured
                    and circuit.state == CircuitState.CLOSED
                    and last_ok is not False,
                    configured=configured,
                    circuit_state=circuit.state.value,
                    consecutive_failures=circuit.consecutive_failures,
                    requests_in_window=limiter.requests_in_window,
                    rate_limit=limiter.max_requests,
                    last_connection_ok=last_ok,
                )
            )
        return results

    def reset_provider(self, provider_id: str) -> bool:
        """Admin reset — clears circuit, rate window and cached connection status."""
        if provider_id not in self._engines:
            return False
        self._engines[provider_id].reset()
        self._limiters[provider_id].reset()
        self._connection_status.forget(provider_id)
        logger.info("provider_admin_reset", provider=provider_id)
        return True

    async def aclose(self) -> None:
        for engine in self._engines.values():
            engine.close()
        if self._owns_client:
            await self._client.aclose()
