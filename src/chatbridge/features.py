"""Capability matrix: which provider/model pairs support which request features.

A feature matches when any custom checker returns True, else when the provider
base URL matches a pattern, else when the base model id contains a listed
model id, else when the model family (or base id) contains a listed family.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import re
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from chatbridge.config import ModelConfig, ProviderConfig

    FeatureChecker = Callable[[ModelConfig, ProviderConfig], bool]

ProviderPattern = str | re.Pattern[str]


class FeatureId(enum.Enum):
    ANTHROPIC_INTERLEAVED_THINKING = "anthropic_interleaved-thinking"
    ANTHROPIC_WEB_SEARCH = "anthropic_web-search"
    ANTHROPIC_MEMORY_TOOL = "anthropic_memory-tool"
    OPENAI_ONLY_USE_MAX_COMPLETION_TOKENS = "openai_only-use-max-completion-tokens"
    OPENAI_CACHE_CONTROL = "openai_cache-control"
    GEMINI_CLAUDE_THINKING_ORDER = "gemini_claude-thinking-order"


@dataclass(frozen=True)
class Feature:
    """Matching rules for one feature. Empty tuples never match."""

    families: tuple[str, ...] = ()
    models: tuple[str, ...] = ()
    providers: tuple[ProviderPattern, ...] = ()
    checkers: tuple[FeatureChecker, ...] = ()


_CLAUDE_4_THINKING = (
    "claude-sonnet-4-5",
    "claude-sonnet-4.5",
    "claude-sonnet-4",
    "claude-opus-4-5",
    "claude-opus-4.5",
    "claude-opus-4-1",
    "claude-opus-4.1",
    "claude-opus-4",
)

_CLAUDE_WEB_SEARCH = (
    *_CLAUDE_4_THINKING,
    "claude-3-7-sonnet",
    "claude-3.7-sonnet",
    "claude-haiku-4-5",
    "claude-haiku-4.5",
    "claude-3-5-haiku",
    "claude-3.5-haiku",
)


def _antigravity_claude_thinking(model: ModelConfig, provider: ProviderConfig) -> bool:
    if provider.type != "google-antigravity":
        return False
    base = model.base_id.lower()
    return "claude" in base and (model.thinking_enabled or "opus" in base)


FEATURES: Mapping[FeatureId, Feature] = MappingProxyType(
    {
        FeatureId.ANTHROPIC_INTERLEAVED_THINKING: Feature(families=_CLAUDE_4_THINKING),
        FeatureId.ANTHROPIC_WEB_SEARCH: Feature(families=_CLAUDE_WEB_SEARCH),
        FeatureId.ANTHROPIC_MEMORY_TOOL: Feature(
            families=(
                "claude-sonnet-4-5",
                "claude-sonnet-4.5",
                "claude-opus-4-5",
                "claude-opus-4.5",
                "claude-opus-4-1",
                "claude-opus-4.1",
                "claude-opus-4",
            )
        ),
        FeatureId.OPENAI_ONLY_USE_MAX_COMPLETION_TOKENS: Feature(
            families=(
                "codex-mini-latest",
                "gpt-5.1",
                "gpt-5.1-codex",
                "gpt-5.1-codex-max",
                "gpt-5.1-codex-mini",
                "gpt-5",
                "gpt-5-codex",
                "gpt-5-mini",
                "gpt-5-nano",
                "gpt-5-pro",
                "o1",
                "o1-mini",
                "o1-preview",
                "o1-pro",
                "o3",
                "o3-deep-research",
                "o3-mini",
                "o3-pro",
                "o4-mini",
                "o4-mini-deep-research",
                "gpt-oss-120b",
                "gpt-oss-20b",
            )
        ),
        FeatureId.OPENAI_CACHE_CONTROL: Feature(
            families=(*_CLAUDE_WEB_SEARCH, "claude-3-haiku")
        ),
        FeatureId.GEMINI_CLAUDE_THINKING_ORDER: Feature(
            checkers=(_antigravity_claude_thinking,)
        ),
    }
)


def match_provider_pattern(url: str, pattern: ProviderPattern) -> bool:
    """Match *url* against a compiled regex or an anchored ``*`` wildcard."""
    if isinstance(pattern, re.Pattern):
        return pattern.search(url) is not None
    regex = "^" + ".*".join(re.escape(piece) for piece in pattern.split("*")) + "$"
    return re.match(regex, url) is not None


def is_feature_supported(
    feature_id: FeatureId,
    provider: ProviderConfig,
    model: ModelConfig,
    *,
    features: Mapping[FeatureId, Feature] = FEATURES,
) -> bool:
    """Return True when *feature_id* applies to this provider/model pair."""
    feature = features.get(feature_id)
    if feature is None:
        return False

    if any(check(model, provider) for check in feature.checkers):
        return True

    if any(match_provider_pattern(provider.base_url, p) for p in feature.providers):
        return True

    base_id = model.base_id
    if base_id and any(m in base_id for m in feature.models):
        return True

    family = model.family or base_id
    return bool(family) and any(f in family for f in feature.families)
