"""Retry engine with an integrated circuit breaker.

One ``RetryEngine`` guards one downstream (one provider).  Every caller that
shares the instance shares its circuit, so a burst of failures from many
concurrent requests trips the breaker for all of them.

State machine:
    CLOSED    → (N consecutive failures)          → OPEN
    OPEN      → (reset timeout, probe issued)     → HALF_OPEN
    HALF_OPEN → (half_open_max_attempts successes) → CLOSED
    HALF_OPEN → (any failure / failed probe)      → OPEN

N is ``server_failure_threshold`` when the failure that crosses it is
service-class and ``network_failure_threshold`` when it is network-class.
Terminal client errors and cancellations never move the circuit.
"""

from __future__ import annotations

import asyncio
import random
import threading
import time
from typing import Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from relay.domain.enums import ErrorClass
from relay.domain.exceptions import (
    CircuitOpenError,
    NetworkError,
    NetworkUnavailableError,
    ProgressCallbackError,
    RequestCancelledError,
)
from relay.ports.outbound import ConnectivityProbe
from relay.shared.observability.metrics import (
    CIRCUIT_STATE,
    CIRCUIT_TRANSITIONS,
    RETRY_ATTEMPTS,
)
from relay.shared.providers.cancellation import CancellationToken, guarded, guarded_sleep
from relay.shared.providers.classification import classify_error, to_chat_error
from relay.shared.providers.types import CircuitSnapshot, CircuitState, RetryConfig

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_ALLOWED_TRANSITIONS: dict[CircuitState, frozenset[CircuitState]] = {
    CircuitState.CLOSED: frozenset({CircuitState.OPEN}),
    CircuitState.OPEN: frozenset({CircuitState.HALF_OPEN}),
    CircuitState.HALF_OPEN: frozenset({CircuitState.CLOSED, CircuitState.OPEN}),
}

_STATE_GAUGE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class RetryEngine:
    """Exponential-backoff retries around one async operation, behind a shared breaker.

    Usage::

        engine = RetryEngine("openai", RetryConfig(max_retries=3), probe=probe)
        text = await engine.execute(lambda: call_provider(request))

    ``sleep`` and ``rng`` are injectable so backoff can be observed in tests.
    """

    def __init__(
        self,
        name: str,
        config: RetryConfig | None = None,
        *,
        probe: ConnectivityProbe | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._name = name
        self._config = config or RetryConfig()
        self._probe = probe
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None
        self._half_open_successes = 0
        self._half_open_trials = 0

        self._reset_timer: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._probe_task: asyncio.Task[None] | None = None
        self._lock = threading.Lock()

        CIRCUIT_STATE.labels(provider=name).set(_STATE_GAUGE_VALUE[self._state])

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return CircuitSnapshot(
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                last_failure_at=self._last_failure_at,
                last_success_at=self._last_success_at,
                half_open_success_count=self._half_open_successes,
                half_open_trials=self._half_open_trials,
            )

    # ── Main entry-point ─────────────────────────────────────
    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Run ``operation`` under the retry policy and the shared circuit.

        Raises:
            CircuitOpenError: The circuit rejected the call; ``operation`` was not invoked.
            NetworkUnavailableError: Connectivity did not recover in time.
            TerminalClientError: Non-retryable upstream rejection (one invocation only).
            NetworkError / ServiceError: Retries exhausted.
            RequestCancelledError: ``cancel_token`` fired.
            ProgressCallbackError: The caller's callback raised; the circuit is untouched.
        """
        is_trial = self._admit()
        decided = False
        attempts = 0

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self._is_retryable),
            sleep=lambda delay: self._backoff(delay, cancel_token),
            before_sleep=self._log_before_retry,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._ensure_online(cancel_token)
                    try:
                        result = await guarded(operation(), cancel_token)
                    except (asyncio.CancelledError, RequestCancelledError, ProgressCallbackError):
                        raise
                    except Exception as exc:
                        error = to_chat_error(exc, self._name)
                        if self._record_failure(error.error_class):
                            decided = True
                        if error is exc:
                            raise
                        raise error from exc
                    self._record_success()
                    decided = True
            return result
        except NetworkUnavailableError:
            raise
        except NetworkError as exc:
            if attempts > 1:
                raise NetworkError(
                    f"Request to {self._name} failed after {attempts} attempts due to "
                    "network issues. Please check your connection."
                ) from exc
            raise
        finally:
            if is_trial and not decided:
                self._release_trial()

    # ── Backoff ──────────────────────────────────────────────
    def compute_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt`` (1-based), jittered and capped."""
        cfg = self._config
        base = min(cfg.max_delay, cfg.initial_delay * cfg.backoff_factor ** (attempt - 1))
        jitter = self._rng.uniform(-cfg.jitter_factor, cfg.jitter_factor)
        return min(cfg.max_delay, max(0.0, base * (1.0 + jitter)))

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.compute_delay(retry_state.attempt_number)

    async def _backoff(self, delay: float, token: CancellationToken | None) -> None:
        if token is None:
            await self._sleep(delay)
        else:
            await token.race(self._sleep(delay))

    @staticmethod
    def _is_retryable(exc: BaseException) -> bool:
        if isinstance(exc, (NetworkUnavailableError, ProgressCallbackError)):
            return False
        return classify_error(exc).is_retryable

    def _log_before_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        RETRY_ATTEMPTS.labels(provider=self._name).inc()
        logger.warning(
            "retry_attempt_failed",
            provider=self._name,
            attempt=retry_state.attempt_number,
            max_attempts=self._config.max_retries + 1,
            error=str(exc) if exc else None,
            next_delay_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        )

    # ── Connectivity ─────────────────────────────────────────
    async def _ensure_online(self, token: CancellationToken | None) -> None:
        """Suspend while offline; the wait is never charged as an attempt."""
        probe = self._probe
        if probe is None or probe.is_online():
            return

        cfg = self._config
        loop = asyncio.get_running_loop()
        deadline = loop.time() + cfg.network_wait_timeout
        logger.warning(
            "network_offline_waiting",
            provider=self._name,
            timeout_s=cfg.network_wait_timeout,
        )
        while not probe.is_online():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise NetworkUnavailableError(
                    "Network unavailable after timeout. Please check your internet connection."
                )
            await guarded_sleep(min(cfg.network_poll_interval, remaining), token)

        logger.info("network_restored", provider=self._name)
        if not await self._safe_probe():
            raise NetworkUnavailableError(
                "Service unavailable even though the network is connected. "
                "Please try again shortly."
            )

    async def _safe_probe(self) -> bool:
        if self._probe is None:
            return True
        try:
            return await self._probe.probe_service()
        except Exception as exc:
            logger.warning("service_probe_error", provider=self._name, error=str(exc))
            return False

    # ── Circuit bookkeeping ──────────────────────────────────
    def _admit(self) -> bool:
        """Gate a new call. Returns True when the call is a half-open trial."""
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._reset_elapsed():
                    self._cancel_reset_timer()
                    self._transition(CircuitState.HALF_OPEN, reason="reset_timeout_elapsed")
                else:
                    raise CircuitOpenError(self._name)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_trials >= self._config.half_open_max_attempts:
                    raise CircuitOpenError(self._name, recovering=True)
                self._half_open_trials += 1
                return True
            return False

    def check_admission(self) -> None:
        """Raise ``CircuitOpenError`` if a call made now would be rejected.

        Read-only: no transition happens and no half-open trial slot is taken,
        so callers can skip work (rate-limit slots, queued waits) up front.
        ``execute`` still gates authoritatively.
        """
        with self._lock:
            if self._state == CircuitState.OPEN and not self._reset_elapsed():
                raise CircuitOpenError(self._name)
            if (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_trials >= self._config.half_open_max_attempts
            ):
                raise CircuitOpenError(self._name, recovering=True)

    def _record_success(self) -> None:
        with self._lock:
            self._last_success_at = time.monotonic()
            if self._state == CircuitState.CLOSED:
                self._consecutive_failures = 0
            elif self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self._config.half_open_max_attempts:
                    self._transition(CircuitState.CLOSED, reason="recovered")

    def _record_failure(self, error_class: ErrorClass) -> bool:
        """Register one failed attempt. Returns True if it counted against the circuit."""
        if not error_class.is_retryable:
            return False
        with self._lock:
            self._consecutive_failures += 1
            self._last_failure_at = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, reason="half_open_failure")
            elif self._state == CircuitState.CLOSED:
                threshold = (
                    self._config.network_failure_threshold
                    if error_class == ErrorClass.NETWORK
                    else self._config.server_failure_threshold
                )
                if self._consecutive_failures >= threshold:
                    self._transition(CircuitState.OPEN, reason=error_class.value)
        return True

    def _release_trial(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_trials > 0:
                self._half_open_trials -= 1

    def _transition(self, target: CircuitState, *, reason: str) -> None:
        """Move the circuit along an allowed edge. Caller holds the lock."""
        previous = self._state
        if target not in _ALLOWED_TRANSITIONS[previous]:
            raise RuntimeError(
                f"illegal circuit transition {previous.value} -> {target.value}"
            )
        self._state = target
        self._half_open_successes = 0
        self._half_open_trials = 0

        if target == CircuitState.OPEN:
            self._arm_reset_timer()
        elif target == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._cancel_reset_timer()

        CIRCUIT_TRANSITIONS.labels(provider=self._name, state=target.value).inc()
        CIRCUIT_STATE.labels(provider=self._name).set(_STATE_GAUGE_VALUE[target])
        log = logger.warning if target == CircuitState.OPEN else logger.info
        log(
            "circuit_transition",
            provider=self._name,
            previous_state=previous.value,
            state=target.value,
            reason=reason,
            failures=self._consecutive_failures,
        )

    def _reset_elapsed(self) -> bool:
        if self._last_failure_at is None:
            return True
        return time.monotonic() - self._last_failure_at >= self._config.circuit_reset_timeout

    # ── Reset timer + half-open probe ────────────────────────
    def _arm_reset_timer(self) -> None:
        """Caller holds the lock. Without a running loop the transition happens lazily."""
        self._cancel_reset_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._loop = loop
        self._reset_timer = loop.call_later(
            self._config.circuit_reset_timeout, self._on_reset_timer
        )

    def _cancel_reset_timer(self) -> None:
        if self._reset_timer is not None:
            self._reset_timer.cancel()
            self._reset_timer = None

    def _on_reset_timer(self) -> None:
        with self._lock:
            self._reset_timer = None
            if self._state != CircuitState.OPEN:
                return
            self._transition(CircuitState.HALF_OPEN, reason="reset_timer")
        if self._probe is not None and self._loop is not None:
            self._probe_task = self._loop.create_task(self._probe_after_reset())

    async def _probe_after_reset(self) -> None:
        healthy = await self._safe_probe()
        if healthy:
            logger.info("circuit_probe_succeeded", provider=self._name)
            return
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._last_failure_at = time.monotonic()
                self._transition(CircuitState.OPEN, reason="probe_failed")

    # ── Admin ────────────────────────────────────────────────
    def reset(self) -> None:
        """Force the breaker back to a fresh CLOSED state (admin override)."""
        with self._lock:
            self._cancel_reset_timer()
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._half_open_successes = 0
            self._half_open_trials = 0
            CIRCUIT_STATE.labels(provider=self._name).set(_STATE_GAUGE_VALUE[self._state])
            logger.info("circuit_force_reset", provider=self._name)

    def close(self) -> None:
        """Cancel any pending timer / probe task (process shutdown)."""
        with self._lock:
            self._cancel_reset_timer()
        if self._probe_task is not None and not self._probe_task.done():
            self._probe_task.cancel()
