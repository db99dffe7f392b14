"""Dispatch service: route canonical chat requests to provider adapters."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote, unquote

from chatbridge.cancellation import CancellationToken
from chatbridge.errors import ConfigurationError, CredentialError
from chatbridge.providers import create_provider
from chatbridge.request_log import RequestLogger, next_request_id
from chatbridge.types import ChatOptions, Message, PerformanceTrace, TextPart, estimate_token_count

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    import httpx

    from chatbridge.config import ModelConfig, ProviderConfig
    from chatbridge.providers.base import ProviderAdapter
    from chatbridge.types import ContentPart, Credential

log = logging.getLogger(__name__)


class CredentialResolver(Protocol):
    """Supplies the credential for one provider, once per request."""

    async def resolve(self, provider: ProviderConfig) -> Credential: ...


class ProviderConfigSource(Protocol):
    """Read-only view of the configured providers."""

    def providers(self) -> Sequence[ProviderConfig]: ...


@dataclass(frozen=True)
class ChatModelInfo:
    """A selectable chat model as exposed to callers."""

    id: str
    name: str
    family: str
    max_input_tokens: int
    max_output_tokens: int
    tool_calling: bool
    image_input: bool
    provider_name: str


def make_model_id(provider_name: str, model_id: str) -> str:
    """``<url-encoded provider name>/<model id>``."""
    return f"{quote(provider_name, safe='')}/{model_id}"


def parse_model_id(model_id: str) -> tuple[str, str] | None:
    provider_part, sep, model_part = model_id.partition("/")
    if not sep:
        return None
    return unquote(provider_part), model_part


class DispatchService:
    """Resolve provider, model and credential, then proxy to the adapter.

    Adapters are cached per provider name and reused across requests; call
    ``clear_clients()`` when the configuration changes.
    """

    def __init__(
        self,
        config_source: ProviderConfigSource,
        credentials: CredentialResolver,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize with the configuration and credential collaborators."""
        self._config_source = config_source
        self._credentials = credentials
        self._transport = transport
        self._clients: dict[str, ProviderAdapter] = {}

    def list_chat_models(self) -> list[ChatModelInfo]:
        return [
            ChatModelInfo(
                id=make_model_id(provider.name, model.id),
                name=model.display_name,
                family=model.family or model.base_id,
                max_input_tokens=model.max_input_tokens,
                max_output_tokens=model.max_output_tokens,
                tool_calling=model.tool_calling,
                image_input=model.image_input,
                provider_name=provider.name,
            )
            for provider in self._config_source.providers()
            for model in provider.models
        ]

    def find(self, model_id: str) -> tuple[ProviderConfig, ModelConfig] | None:
        """Look up the provider and model for a canonical model id."""
        parsed = parse_model_id(model_id)
        if parsed is None:
            return None
        provider_name, upstream_id = parsed
        for provider in self._config_source.providers():
            if provider.name != provider_name:
                continue
            model = provider.find_model(upstream_id)
            if model is not None:
                return provider, model
        return None

    def _get_client(self, provider: ProviderConfig) -> ProviderAdapter:
        client = self._clients.get(provider.name)
        if client is None:
            client = create_provider(provider, transport=self._transport)
            self._clients[provider.name] = client
        return client

    async def _resolve_credential(self, provider: ProviderConfig) -> Credential:
        try:
            return await self._credentials.resolve(provider)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise CredentialError(
                f"Could not resolve credential for provider {provider.name!r}: {e}",
                hint="Re-enter the API key or sign in again for this provider.",
            ) from e

    async def stream_chat(
        self,
        model_id: str,
        messages: Sequence[Message],
        options: ChatOptions | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ContentPart]:
        """Stream canonical response parts for *model_id*.

        Cancellation stops the stream quietly. Upstream and validation errors
        are logged with the request context and re-raised.
        """
        options = options if options is not None else ChatOptions()
        cancel = cancel if cancel is not None else CancellationToken()
        trace = PerformanceTrace()

        found = self.find(model_id)
        if found is None:
            raise ConfigurationError(
                f"Model not found: {model_id}",
                hint="Use an id returned by list_chat_models().",
            )
        provider, model = found
        credential = await self._resolve_credential(provider)

        logger = RequestLogger(next_request_id())
        logger.start(model_id)
        client = self._get_client(provider)
        stream = client.stream_chat(
            logger.request_id,
            model,
            messages,
            options,
            credential,
            trace=trace,
            cancel=cancel,
            logger=logger,
        )
        try:
            async with contextlib.aclosing(stream) as parts:
                async for part in parts:
                    if cancel.is_cancelled:
                        break
                    yield part
        except Exception as e:
            logger.error(e)
            raise
        trace.complete()
        logger.complete(trace)

    def count_tokens(self, model_id: str, text: str | Message) -> int:
        """Estimated token count; falls back to the shared heuristic."""
        if isinstance(text, Message):
            content = "".join(p.text for p in text.content if isinstance(p, TextPart))
        else:
            content = text
        found = self.find(model_id)
        if found is None:
            return estimate_token_count(content)
        return self._get_client(found[0]).estimate_token_count(content)

    async def clear_clients(self) -> None:
        """Drop cached adapters and release their connections."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            try:
                await client.aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                log.warning("Provider cleanup failed: %s", exc)

    async def aclose(self) -> None:
        await self.clear_clients()

    async def __aenter__(self) -> DispatchService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
