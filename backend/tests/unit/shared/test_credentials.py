"""Tests for API key format validation."""

from __future__ import annotations

import pytest

from relay.shared.providers.credentials import (
    api_key_quality_score,
    is_key_eligible,
    loose_validate_api_key,
    validate_api_key,
)

from fakes import make_spec


class TestValidateApiKey:
    @pytest.mark.parametrize(
        ("provider_id", "key"),
        [
            ("openai", "sk-" + "a1" * 20),
            ("anthropic", "sk-ant-" + "b2" * 15),
            ("groq", "gsk_" + "c3" * 15),
            ("perplexity", "pplx-" + "d4" * 15),
            ("xai", "xai-" + "e5" * 15),
            ("google", "AIza" + "f6" * 15),
        ],
    )
    def test_well_formed_keys(self, provider_id: str, key: str) -> None:
        assert validate_api_key(provider_id, key)

    @pytest.mark.parametrize(
        ("provider_id", "key"),
        [
            ("openai", ""),
            ("openai", "   "),
            ("openai", "sk-short"),
            ("anthropic", "sk-" + "x" * 40),
            ("groq", "gsk-" + "y" * 30),
            ("google", "AIza-too-short"),
            ("unknown", "1234567"),
        ],
    )
    def test_malformed_keys(self, provider_id: str, key: str) -> None:
        assert not validate_api_key(provider_id, key)

    def test_surrounding_whitespace_ignored(self) -> None:
        assert validate_api_key("openai", "  sk-" + "a" * 32 + "\n")

    def test_custom_pattern_overrides_table(self) -> None:
        assert validate_api_key("openai", "team-12345678", key_pattern=r"^team-\d{8}$")
        assert not validate_api_key("openai", "sk-" + "a" * 32, key_pattern=r"^team-\d{8}$")

    def test_unknown_provider_uses_length(self) -> None:
        assert validate_api_key("acme", "k" * 16)
        assert not validate_api_key("acme", "k" * 15)


class TestLooseValidation:
    def test_length_only(self) -> None:
        assert loose_validate_api_key("0123456789")
        assert not loose_validate_api_key("012345678")
        assert not loose_validate_api_key(None)

    def test_quality_score(self) -> None:
        assert api_key_quality_score("openai", None) == 0.0
        strong = api_key_quality_score("openai", "sk-" + "a" * 40)
        weak = api_key_quality_score("openai", "a" * 12)
        assert strong == pytest.approx(1.0)
        assert weak == pytest.approx(0.5)


class TestEligibility:
    def test_strict_pass(self) -> None:
        assert is_key_eligible(make_spec("acme"))

    def test_loose_pass_for_nonstandard_key(self) -> None:
        spec = make_spec("openai", api_key="proxy-token-123")
        assert not validate_api_key("openai", spec.api_key)
        assert is_key_eligible(spec)

    def test_missing_or_tiny_key_ineligible(self) -> None:
        assert not is_key_eligible(make_spec("acme", api_key=""))
        assert not is_key_eligible(make_spec("acme", api_key="abc"))
