"""Configuration: frozen provider and model shapes with explicit validation."""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Any, Literal

from dotenv import load_dotenv

from chatbridge.errors import ConfigurationError
from chatbridge.retry import RetryPolicy

load_dotenv()

ProviderType = Literal["anthropic", "openai-chat-completion", "google-antigravity"]
ThinkingType = Literal["enabled", "disabled", "auto"]
Effort = Literal["none", "minimal", "low", "medium", "high", "xhigh"]

PROVIDER_TYPES: tuple[str, ...] = (
    "anthropic",
    "openai-chat-completion",
    "google-antigravity",
)

DEFAULT_MAX_OUTPUT_TOKENS = 8192
DEFAULT_MAX_INPUT_TOKENS = 128000

_EFFORTS = ("none", "minimal", "low", "medium", "high", "xhigh")
_SECRET_HEADER_MARKERS = ("key", "token", "secret", "authorization", "cookie")


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def _env_seconds(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"{name} must be a number of seconds, got {raw!r}",
            hint=f"Unset {name} or set it to e.g. 60.",
        ) from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")
    return value


def verbose_from_env() -> bool:
    """Whether ``CHATBRIDGE_VERBOSE`` asks for detailed request logging."""
    return _env_flag("CHATBRIDGE_VERBOSE")


def _pick(data: dict[str, Any], snake: str, camel: str | None = None) -> Any:
    """Read *snake* or its camelCase spelling from a raw config mapping."""
    if snake in data:
        return data[snake]
    if camel is None:
        head, *rest = snake.split("_")
        camel = head + "".join(w.capitalize() for w in rest)
    return data.get(camel)


@dataclass(frozen=True)
class TimeoutConfig:
    """Two independent timeout budgets, in seconds.

    ``connection`` bounds connection establishment; ``response`` bounds the
    time since the last received byte and is reset by every chunk.
    """

    connection: float = 60.0
    response: float = 300.0

    def __post_init__(self) -> None:
        """Both budgets must be positive."""
        if self.connection <= 0 or self.response <= 0:
            raise ConfigurationError(
                f"Timeouts must be > 0, got connection={self.connection} "
                f"response={self.response}",
                hint="Timeouts are expressed in seconds.",
            )

    @classmethod
    def from_env(cls) -> TimeoutConfig:
        """Defaults, overridden by ``CHATBRIDGE_*_TIMEOUT_S`` when set."""
        return cls(
            connection=_env_seconds("CHATBRIDGE_CONNECT_TIMEOUT_S", 60.0),
            response=_env_seconds("CHATBRIDGE_RESPONSE_TIMEOUT_S", 300.0),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimeoutConfig:
        """Build from a raw mapping; values may be milliseconds under ``*Ms`` keys."""
        base = cls.from_env()
        connection = _pick(data, "connection")
        response = _pick(data, "response")
        if connection is None and data.get("connectionMs") is not None:
            connection = float(data["connectionMs"]) / 1000
        if response is None and data.get("responseMs") is not None:
            response = float(data["responseMs"]) / 1000
        return cls(
            connection=float(connection) if connection is not None else base.connection,
            response=float(response) if response is not None else base.response,
        )


DEFAULT_TIMEOUT = TimeoutConfig(connection=60.0, response=300.0)


@dataclass(frozen=True)
class ThinkingConfig:
    """Reasoning controls for models that support them."""

    type: ThinkingType = "disabled"
    budget_tokens: int | None = None
    effort: Effort | None = None

    def __post_init__(self) -> None:
        """Validate type, budget and effort."""
        if self.type not in ("enabled", "disabled", "auto"):
            raise ConfigurationError(
                f"Unknown thinking type: {self.type!r}",
                hint="Use 'enabled', 'disabled' or 'auto'.",
            )
        if self.budget_tokens is not None and self.budget_tokens < 0:
            raise ConfigurationError(
                f"thinking.budget_tokens must be >= 0, got {self.budget_tokens}"
            )
        if self.effort is not None and self.effort not in _EFFORTS:
            raise ConfigurationError(
                f"Unknown thinking effort: {self.effort!r}",
                hint=f"Supported: {', '.join(_EFFORTS)}",
            )

    @property
    def enabled(self) -> bool:
        return self.type == "enabled"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ThinkingConfig:
        return cls(
            type=data.get("type", "disabled"),
            budget_tokens=_pick(data, "budget_tokens"),
            effort=data.get("effort"),
        )


@dataclass(frozen=True)
class WebSearchConfig:
    """Server-side web search options (Anthropic native tool)."""

    enabled: bool = False
    max_uses: int | None = None
    allowed_domains: tuple[str, ...] = ()
    blocked_domains: tuple[str, ...] = ()
    user_location: dict[str, str] | None = None

    def __post_init__(self) -> None:
        """Allowed and blocked domain lists are mutually exclusive."""
        if self.allowed_domains and self.blocked_domains:
            raise ConfigurationError(
                "web_search cannot set both allowed_domains and blocked_domains",
                hint="Pick one list; the upstream API rejects both together.",
            )
        if self.max_uses is not None and self.max_uses < 1:
            raise ConfigurationError(
                f"web_search.max_uses must be >= 1, got {self.max_uses}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WebSearchConfig:
        return cls(
            enabled=bool(data.get("enabled", False)),
            max_uses=_pick(data, "max_uses"),
            allowed_domains=tuple(_pick(data, "allowed_domains") or ()),
            blocked_domains=tuple(_pick(data, "blocked_domains") or ()),
            user_location=_pick(data, "user_location"),
        )


@dataclass(frozen=True)
class ModelConfig:
    """A model entry in a provider configuration.

    ``id`` may carry a ``#suffix`` to register the same upstream model twice
    with different settings; the suffix is stripped before it is sent.
    """

    id: str
    name: str | None = None
    family: str | None = None
    max_input_tokens: int = DEFAULT_MAX_INPUT_TOKENS
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    stream: bool = True
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    parallel_tool_calling: bool | None = None
    thinking: ThinkingConfig | None = None
    interleaved_thinking: bool = False
    web_search: WebSearchConfig | None = None
    memory_tool: bool = False
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)
    tool_calling: bool = True
    image_input: bool = False

    def __post_init__(self) -> None:
        """Validate identifiers and token limits."""
        if not self.id or not self.id.strip():
            raise ConfigurationError(
                "Model id must be a non-empty string",
                hint="Use the upstream model identifier, e.g. 'claude-sonnet-4-5'.",
            )
        if self.max_output_tokens < 1:
            raise ConfigurationError(
                f"max_output_tokens must be >= 1, got {self.max_output_tokens}"
            )
        if self.max_input_tokens < 1:
            raise ConfigurationError(
                f"max_input_tokens must be >= 1, got {self.max_input_tokens}"
            )

    @property
    def base_id(self) -> str:
        """Upstream model id with any ``#suffix`` removed."""
        return self.id.split("#", 1)[0]

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def thinking_enabled(self) -> bool:
        return self.thinking is not None and self.thinking.enabled

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelConfig:
        """Build from a raw mapping using camelCase or snake_case keys."""
        thinking = data.get("thinking")
        web_search = _pick(data, "web_search")
        stream = data.get("stream")
        tool_calling = _pick(data, "tool_calling")
        image_input = _pick(data, "image_input")
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name"),
            family=data.get("family"),
            max_input_tokens=int(
                _pick(data, "max_input_tokens") or DEFAULT_MAX_INPUT_TOKENS
            ),
            max_output_tokens=int(
                _pick(data, "max_output_tokens") or DEFAULT_MAX_OUTPUT_TOKENS
            ),
            stream=True if stream is None else bool(stream),
            temperature=data.get("temperature"),
            top_p=_pick(data, "top_p"),
            top_k=_pick(data, "top_k"),
            frequency_penalty=_pick(data, "frequency_penalty"),
            presence_penalty=_pick(data, "presence_penalty"),
            parallel_tool_calling=_pick(data, "parallel_tool_calling"),
            thinking=ThinkingConfig.from_dict(thinking) if thinking else None,
            interleaved_thinking=bool(_pick(data, "interleaved_thinking")),
            web_search=WebSearchConfig.from_dict(web_search) if web_search else None,
            memory_tool=bool(_pick(data, "memory_tool")),
            extra_headers=dict(_pick(data, "extra_headers") or {}),
            extra_body=dict(_pick(data, "extra_body") or {}),
            tool_calling=True if tool_calling is None else bool(tool_calling),
            image_input=bool(image_input),
        )


@dataclass(frozen=True)
class ProviderConfig:
    """Read-only configuration for one upstream endpoint.

    Example:
        ProviderConfig(
            type="anthropic",
            name="Anthropic",
            base_url="https://api.anthropic.com",
            models=(ModelConfig(id="claude-sonnet-4-5"),),
        )
    """

    type: ProviderType
    name: str
    base_url: str
    models: tuple[ModelConfig, ...] = ()
    extra_headers: dict[str, str] = field(default_factory=dict)
    extra_body: dict[str, Any] = field(default_factory=dict)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig.from_env)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    #: Antigravity only; a synthetic project id is used when unset.
    project_id: str | None = None

    def __post_init__(self) -> None:
        """Validate provider type and name."""
        if self.type not in PROVIDER_TYPES:
            raise ConfigurationError(
                f"Unknown provider type: {self.type!r}",
                hint=f"Supported provider types: {', '.join(PROVIDER_TYPES)}",
            )
        if not self.name or not self.name.strip():
            raise ConfigurationError(
                "Provider name must be a non-empty string",
                hint="The name is used as the first segment of model ids.",
            )

    def find_model(self, model_id: str) -> ModelConfig | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderConfig:
        """Build from a raw mapping using camelCase or snake_case keys."""
        timeout = data.get("timeout")
        retry = data.get("retry")
        return cls(
            type=data.get("type", ""),
            name=str(data.get("name", "")),
            base_url=str(_pick(data, "base_url") or ""),
            models=tuple(ModelConfig.from_dict(m) for m in data.get("models") or ()),
            extra_headers=dict(_pick(data, "extra_headers") or {}),
            extra_body=dict(_pick(data, "extra_body") or {}),
            timeout=TimeoutConfig.from_dict(timeout) if timeout else TimeoutConfig.from_env(),
            retry=RetryPolicy.from_dict(retry) if retry else RetryPolicy(),
            project_id=_pick(data, "project_id"),
        )

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        headers = {
            k: "[REDACTED]"
            if any(m in k.lower() for m in _SECRET_HEADER_MARKERS)
            else v
            for k, v in self.extra_headers.items()
        }
        return (
            f"ProviderConfig(type={self.type!r}, name={self.name!r}, "
            f"base_url={self.base_url!r}, models={[m.id for m in self.models]}, "
            f"extra_headers={headers})"
        )

    __repr__ = __str__
