"""Adapter protocol: the minimal interface every upstream backend implements."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from chatbridge.cancellation import CancellationToken
    from chatbridge.config import ModelConfig, ProviderConfig
    from chatbridge.request_log import RequestLogger
    from chatbridge.types import (
        ChatOptions,
        ContentPart,
        Credential,
        Message,
        ModelDescriptor,
        PerformanceTrace,
        WireRequest,
    )


@runtime_checkable
class ProviderAdapter(Protocol):
    """Build, send and decode requests for one upstream wire protocol."""

    provider: ProviderConfig

    def build_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        options: ChatOptions,
        credential: Credential,
    ) -> WireRequest:
        """Translate a canonical request into the backend's wire shape.

        Raises ``RequestValidationError`` before any network call when the
        request violates a backend contract.
        """
        ...

    def stream_chat(
        self,
        request_id: str,
        model: ModelConfig,
        messages: Sequence[Message],
        options: ChatOptions,
        credential: Credential,
        *,
        trace: PerformanceTrace | None = None,
        cancel: CancellationToken | None = None,
        logger: RequestLogger | None = None,
    ) -> AsyncIterator[ContentPart]:
        """Yield canonical response parts. Finite and not restartable.

        Cancellation ends the sequence quietly; it is never an error.
        """
        ...

    async def list_models(self, credential: Credential) -> list[ModelDescriptor]:
        """Models the backend reports as available."""
        ...

    def estimate_token_count(self, text: str) -> int:
        """Heuristic token count for backends without usage accounting."""
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...
