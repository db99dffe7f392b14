"""Provider adapters and the registry keyed by provider type."""

from __future__ import annotations

from typing import TYPE_CHECKING

from chatbridge.errors import ConfigurationError

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .gemini import AntigravityAdapter
from .openai import OpenAIChatAdapter

if TYPE_CHECKING:
    import httpx

    from chatbridge.config import ProviderConfig

PROVIDERS: dict[str, type[ProviderAdapter]] = {
    AnthropicAdapter.type: AnthropicAdapter,
    OpenAIChatAdapter.type: OpenAIChatAdapter,
    AntigravityAdapter.type: AntigravityAdapter,
}


def create_provider(
    provider: ProviderConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter registered for ``provider.type``."""
    adapter_cls = PROVIDERS.get(provider.type)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unsupported provider type: {provider.type!r}",
            hint=f"Supported provider types: {', '.join(sorted(PROVIDERS))}",
        )
    return adapter_cls(provider, transport=transport)  # type: ignore[call-arg]


__all__ = [
    "PROVIDERS",
    "AnthropicAdapter",
    "AntigravityAdapter",
    "OpenAIChatAdapter",
    "ProviderAdapter",
    "create_provider",
]
