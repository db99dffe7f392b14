"""chatbridge: one canonical chat model over several LLM wire protocols.

Public API:
    - DispatchService: route a canonical request to the configured backend
    - Message and the content-part types: the canonical conversation model
    - ProviderConfig / ModelConfig: read-only backend configuration
    - CancellationToken: caller-owned cancellation
"""

from __future__ import annotations

import logging

from chatbridge.cancellation import CancellationToken
from chatbridge.config import ModelConfig, ProviderConfig, ThinkingConfig, TimeoutConfig
from chatbridge.errors import (
    APIError,
    ChatBridgeError,
    ConfigurationError,
    CredentialError,
    RateLimitError,
    RequestValidationError,
    StreamError,
)
from chatbridge.retry import RetryPolicy
from chatbridge.service import ChatModelInfo, DispatchService
from chatbridge.types import (
    CacheMarkerPart,
    ChatOptions,
    CitationPart,
    Credential,
    DataPart,
    ImagePart,
    Message,
    RedactedThinkingPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolDefinition,
    ToolResultPart,
)

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("chatbridge")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("chatbridge").addHandler(logging.NullHandler())

__all__ = [
    "APIError",
    "CacheMarkerPart",
    "CancellationToken",
    "ChatBridgeError",
    "ChatModelInfo",
    "ChatOptions",
    "CitationPart",
    "ConfigurationError",
    "Credential",
    "CredentialError",
    "DataPart",
    "DispatchService",
    "ImagePart",
    "Message",
    "ModelConfig",
    "ProviderConfig",
    "RateLimitError",
    "RedactedThinkingPart",
    "RequestValidationError",
    "RetryPolicy",
    "StreamError",
    "TextPart",
    "ThinkingConfig",
    "ThinkingPart",
    "TimeoutConfig",
    "ToolCallPart",
    "ToolDefinition",
    "ToolResultPart",
]
