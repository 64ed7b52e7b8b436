"""Tests for the model catalog, pricing and key format rules."""

from __future__ import annotations

import pytest

from storyforge.ai.ai_types import Provider, Usage
from storyforge.ai.catalog import (
    MODEL_CATALOG,
    MODEL_PRICES,
    estimate_cost,
    get_model,
    list_models,
    resolve_provider,
    validate_api_key_format,
)
from storyforge.ai.errors import ConfigurationError


class TestResolveProvider:
    @pytest.mark.parametrize(
        ("model", "provider"),
        [
            ("claude-sonnet-4-20250514", Provider.ANTHROPIC),
            ("gpt-4o-mini", Provider.OPENAI),
            ("gpt-5", Provider.OPENAI),
            ("gemini-1.5-pro", Provider.GOOGLE),
        ],
    )
    def test_provider_follows_model(self, model: str, provider: Provider) -> None:
        assert resolve_provider(model) is provider

    def test_unknown_model_is_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown model"):
            resolve_provider("llama-99")

    def test_every_catalog_model_has_a_price(self) -> None:
        assert set(MODEL_CATALOG) == set(MODEL_PRICES)

    def test_only_gemini_models_support_context_cache(self) -> None:
        cached = {model.id for model in list_models() if model.supports_context_cache}
        assert cached == {model.id for model in list_models(Provider.GOOGLE)}
        assert get_model("gemini-2.0-flash").supports_context_cache is True


class TestEstimateCost:
    def test_prices_input_and_output(self) -> None:
        cost = estimate_cost(Usage(input_tokens=1000, output_tokens=1000), "claude-sonnet-4-20250514")

        assert cost.known is True
        assert cost.amount == pytest.approx(0.018)
        assert cost.format() == "$0.0180"

    def test_unknown_model_reports_unknown_instead_of_zero(self) -> None:
        cost = estimate_cost(Usage(input_tokens=1000, output_tokens=1000), "mystery-model")

        assert cost.known is False
        assert cost.amount is None
        assert cost.format() == "unknown"

    def test_claude_cache_reads_are_discounted(self) -> None:
        plain = estimate_cost(Usage(input_tokens=1000), "claude-sonnet-4-20250514")
        cached = estimate_cost(Usage(input_tokens=0, cache_read_tokens=1000), "claude-sonnet-4-20250514")

        assert cached.amount == pytest.approx(plain.amount * 0.1)

    def test_openai_cached_tokens_are_part_of_input(self) -> None:
        cost = estimate_cost(Usage(input_tokens=1000, cache_read_tokens=1000), "gpt-4o")

        assert cost.amount == pytest.approx(0.0025 * 0.5)


class TestApiKeyFormat:
    @pytest.mark.parametrize(
        ("provider", "key", "valid"),
        [
            (Provider.ANTHROPIC, "sk-ant-REDACTED", True),
            (Provider.ANTHROPIC, "sk-abcdefghijklmnopqrstuvwxyz", False),
            (Provider.OPENAI, "sk-proj-abcdefghijklmnopqrstuvwxyz", True),
            (Provider.OPENAI, "sk-short", False),
            (Provider.GOOGLE, "AIzaSyA-abcdefghijklmnopqrstuvwxyz0123", True),
            (Provider.GOOGLE, "not-a-google-key-abcdefghijklmnopqrstuvwxyz", False),
        ],
    )
    def test_prefix_and_length(self, provider: Provider, key: str, valid: bool) -> None:
        assert validate_api_key_format(provider, key) is valid

    def test_blank_key_is_invalid(self) -> None:
        assert validate_api_key_format(Provider.OPENAI, "   ") is False
