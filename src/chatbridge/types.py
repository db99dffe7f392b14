"""Canonical conversation and tool model shared by every adapter."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import time
from typing import Any, Literal, TypeAlias

Role = Literal["system", "user", "assistant"]
ToolMode = Literal["auto", "required", "none"]


@dataclass(frozen=True)
class TextPart:
    """Plain text."""

    text: str
    type: Literal["text"] = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    """An image, either inline bytes or a remote URL."""

    mime_type: str
    data: bytes | None = None
    url: str | None = None
    type: Literal["image"] = field(default="image", init=False)

    def __post_init__(self) -> None:
        """Exactly one of ``data`` or ``url`` must be provided."""
        if (self.data is None) == (self.url is None):
            raise ValueError("ImagePart requires exactly one of data or url")


@dataclass(frozen=True)
class CacheMarkerPart:
    """Ephemeral cache-control hint for the part that precedes it."""

    type: Literal["cache_marker"] = field(default="cache_marker", init=False)


@dataclass(frozen=True)
class ToolCallPart:
    """A tool call requested by the model."""

    call_id: str
    name: str
    input: dict[str, Any]
    #: Gemini attaches the reasoning signature to the call itself.
    thought_signature: str | None = None
    type: Literal["tool_call"] = field(default="tool_call", init=False)


@dataclass(frozen=True)
class ToolResultPart:
    """The caller's answer to a previous tool call."""

    call_id: str
    content: tuple[TextPart | ImagePart | CacheMarkerPart, ...] = ()
    is_error: bool | None = None
    type: Literal["tool_result"] = field(default="tool_result", init=False)

    def text(self) -> str:
        """Concatenated text content, newline separated."""
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))


@dataclass(frozen=True)
class ThinkingPart:
    """A complete, signed reasoning block that can be replayed verbatim."""

    text: str
    signature: str
    type: Literal["thinking"] = field(default="thinking", init=False)


@dataclass(frozen=True)
class RedactedThinkingPart:
    """An opaque reasoning blob. Never shown, but replayed on later turns."""

    data: str
    type: Literal["redacted_thinking"] = field(default="redacted_thinking", init=False)


@dataclass(frozen=True)
class CitationPart:
    """Citations attached to the text that follows."""

    citations: tuple[dict[str, Any], ...]
    type: Literal["citation_set"] = field(default="citation_set", init=False)


@dataclass(frozen=True)
class DataPart:
    """Structured provider data that is neither text nor a tool call."""

    mime_type: str
    data: dict[str, Any]
    type: Literal["data"] = field(default="data", init=False)


ContentPart: TypeAlias = (
    TextPart
    | ImagePart
    | CacheMarkerPart
    | ToolCallPart
    | ToolResultPart
    | ThinkingPart
    | RedactedThinkingPart
    | CitationPart
    | DataPart
)

THINKING_PART_TYPES = (ThinkingPart, RedactedThinkingPart)

# Mime types for provider-originated data parts.
WEB_SEARCH_TOOL_USE_MIME = "application/vnd.chatbridge.web-search-tool-use+json"
WEB_SEARCH_TOOL_RESULT_MIME = "application/vnd.chatbridge.web-search-tool-result+json"


@dataclass(frozen=True)
class Message:
    """One conversational turn."""

    role: Role
    content: tuple[ContentPart, ...] = ()

    @classmethod
    def user(cls, *parts: ContentPart | str) -> Message:
        """Build a user message; bare strings become text parts."""
        return cls("user", _coerce_parts(parts))

    @classmethod
    def assistant(cls, *parts: ContentPart | str) -> Message:
        """Build an assistant message; bare strings become text parts."""
        return cls("assistant", _coerce_parts(parts))

    @classmethod
    def system(cls, *parts: ContentPart | str) -> Message:
        """Build a system message; bare strings become text parts."""
        return cls("system", _coerce_parts(parts))


def _coerce_parts(parts: tuple[ContentPart | str, ...]) -> tuple[ContentPart, ...]:
    return tuple(TextPart(p) if isinstance(p, str) else p for p in parts)


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None


@dataclass(frozen=True)
class ChatOptions:
    """Per-request caller options."""

    tools: tuple[ToolDefinition, ...] = ()
    tool_mode: ToolMode = "auto"


@dataclass(frozen=True)
class ModelDescriptor:
    """A model reported by a provider's listing endpoint."""

    id: str
    name: str | None = None


@dataclass(frozen=True)
class WireRequest:
    """A fully built upstream request, ready to send."""

    url: str
    headers: dict[str, str]
    body: dict[str, Any]
    stream: bool = True


@dataclass(frozen=True)
class Credential:
    """An already-resolved credential for one request."""

    token: str
    token_type: str = "Bearer"

    def __repr__(self) -> str:
        """Never print the token."""
        return f"Credential(token='[REDACTED]', token_type={self.token_type!r})"


@dataclass
class PerformanceTrace:
    """Latency markers for one request, in milliseconds.

    ``tts`` is the monotonic start time; the other fields are offsets or rates
    derived from it.
    """

    tts: float = field(default_factory=lambda: time.monotonic() * 1000)
    #: Time to first byte (headers received).
    ttf: float = 0.0
    #: Time to first token, measured from the first byte.
    ttft: float = 0.0
    #: Output tokens per second; NaN when the backend reports no usage.
    tps: float = math.nan
    #: Total latency.
    tl: float = 0.0

    @staticmethod
    def now() -> float:
        """Monotonic clock in milliseconds."""
        return time.monotonic() * 1000

    def mark_first_byte(self) -> None:
        """Record time-to-first-byte."""
        self.ttf = self.now() - self.tts

    def mark_first_token(self) -> None:
        """Record time-to-first-token once."""
        if not self.ttft:
            self.ttft = self.now() - (self.tts + self.ttf)

    def record_output_tokens(self, output_tokens: int | None) -> None:
        """Derive tokens/second from the backend's usage accounting."""
        if output_tokens is None:
            self.tps = math.nan
            return
        elapsed = self.now() - (self.tts + self.ttf)
        self.tps = output_tokens / elapsed * 1000 if elapsed > 0 else math.nan

    def complete(self) -> None:
        """Record total latency."""
        self.tl = self.now() - self.tts


def estimate_token_count(text: str) -> int:
    """Rough token estimate: about four characters per token."""
    return math.ceil(len(text) / 4)
