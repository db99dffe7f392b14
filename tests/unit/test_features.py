"""Capability matrix lookups."""

from __future__ import annotations

import re

import pytest

from chatbridge.config import ModelConfig, ThinkingConfig
from chatbridge.features import (
    Feature,
    FeatureId,
    is_feature_supported,
    match_provider_pattern,
)
from tests.conftest import make_provider

pytestmark = pytest.mark.unit

ANTHROPIC = make_provider("anthropic", base_url="https://api.anthropic.com")
OPENAI = make_provider("openai-chat-completion", base_url="https://api.openai.com")
ANTIGRAVITY = make_provider("google-antigravity", base_url="https://cloudcode.example.com")


@pytest.mark.parametrize(
    ("model_id", "expected"),
    [
        ("claude-sonnet-4-5-20250929", True),
        ("claude-opus-4-1", True),
        ("claude-3-7-sonnet-latest", False),
        ("gpt-4o", False),
    ],
)
def test_interleaved_thinking_matches_claude_4_family(model_id: str, expected: bool) -> None:
    model = ModelConfig(id=model_id)
    assert (
        is_feature_supported(FeatureId.ANTHROPIC_INTERLEAVED_THINKING, ANTHROPIC, model)
        is expected
    )


def test_family_override_takes_precedence_over_model_id() -> None:
    model = ModelConfig(id="my-proxy-alias", family="claude-sonnet-4-5")
    assert is_feature_supported(FeatureId.ANTHROPIC_WEB_SEARCH, ANTHROPIC, model)


def test_model_id_suffix_is_ignored_when_matching() -> None:
    model = ModelConfig(id="gpt-5-mini#low-effort")
    assert is_feature_supported(
        FeatureId.OPENAI_ONLY_USE_MAX_COMPLETION_TOKENS, OPENAI, model
    )
    assert not is_feature_supported(
        FeatureId.OPENAI_ONLY_USE_MAX_COMPLETION_TOKENS, OPENAI, ModelConfig(id="gpt-4o")
    )


def test_antigravity_claude_thinking_order_uses_custom_checker() -> None:
    thinking = ThinkingConfig(type="enabled", budget_tokens=2048)
    sonnet = ModelConfig(id="claude-sonnet-4-5", thinking=thinking)
    opus = ModelConfig(id="claude-opus-4-5")
    plain = ModelConfig(id="claude-sonnet-4-5")

    feature = FeatureId.GEMINI_CLAUDE_THINKING_ORDER
    assert is_feature_supported(feature, ANTIGRAVITY, sonnet)
    assert is_feature_supported(feature, ANTIGRAVITY, opus)
    assert not is_feature_supported(feature, ANTIGRAVITY, plain)
    assert not is_feature_supported(feature, ANTHROPIC, sonnet)


def test_provider_patterns_and_explicit_models() -> None:
    features = {
        FeatureId.OPENAI_CACHE_CONTROL: Feature(
            providers=("https://openrouter.ai/*",), models=("special-model",)
        )
    }
    router = make_provider(base_url="https://openrouter.ai/api/v1")

    assert is_feature_supported(
        FeatureId.OPENAI_CACHE_CONTROL, router, ModelConfig(id="anything"), features=features
    )
    assert is_feature_supported(
        FeatureId.OPENAI_CACHE_CONTROL,
        OPENAI,
        ModelConfig(id="vendor/special-model-2"),
        features=features,
    )
    assert not is_feature_supported(
        FeatureId.OPENAI_CACHE_CONTROL, OPENAI, ModelConfig(id="other"), features=features
    )


def test_unknown_feature_is_unsupported() -> None:
    assert not is_feature_supported(
        FeatureId.ANTHROPIC_MEMORY_TOOL, ANTHROPIC, ModelConfig(id="claude-opus-4"), features={}
    )


@pytest.mark.parametrize(
    ("url", "pattern", "expected"),
    [
        ("https://api.example.com/v1", "https://api.example.com/*", True),
        ("https://api.example.com", "https://api.example.com/*", False),
        ("https://evil.com/?https://api.example.com/", "https://api.example.com/*", False),
        ("https://a.b.c/x", re.compile(r"\.b\."), True),
    ],
)
def test_match_provider_pattern(url: str, pattern, expected: bool) -> None:
    assert match_provider_pattern(url, pattern) is expected
