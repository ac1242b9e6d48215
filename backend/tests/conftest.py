"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from fakes import Recorder, completion, make_spec, sse_body
from relay.domain.entities import ChatRequest
from relay.shared.providers.types import ProviderSpec, RetryConfig


@pytest.fixture
def fast_retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=1,
        initial_delay=0.0,
        max_delay=0.0,
        jitter_factor=0.0,
        circuit_reset_timeout=30.0,
        half_open_max_attempts=1,
    )


@pytest.fixture
def hello_request() -> ChatRequest:
    return ChatRequest.from_dicts([{"role": "user", "content": "Hello"}])


@pytest.fixture
def spec_factory() -> Callable[..., ProviderSpec]:
    return make_spec


@pytest.fixture
def sse() -> Callable[..., bytes]:
    return sse_body


@pytest.fixture
def reply() -> Callable[[str], dict[str, Any]]:
    return completion


@pytest.fixture
def recorder() -> type[Recorder]:
    return Recorder
