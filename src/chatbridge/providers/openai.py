"""OpenAI Chat Completions adapter."""

from __future__ import annotations

import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from chatbridge.cancellation import CancellationToken
from chatbridge.errors import APIError, RequestCancelled, RequestValidationError
from chatbridge.features import FeatureId, is_feature_supported
from chatbridge.normalize import (
    EPHEMERAL_CACHE_CONTROL,
    PLACEHOLDER_USER_TEXT,
    ensure_user_first,
    merge_alternating,
)
from chatbridge.providers._errors import raise_for_response, wrap_transport_error
from chatbridge.providers._utils import (
    deep_merge,
    ensure_versioned_base_url,
    image_data_uri,
    is_event_stream,
    iter_response_events,
    make_client,
    merge_headers,
    open_response,
    read_json,
)
from chatbridge.request_log import RequestLogger
from chatbridge.retry import send_with_retry
from chatbridge.streaming import ToolCallAccumulator
from chatbridge.tool_choice import ANY, NONE, Forced, resolve_tool_choice
from chatbridge.types import (
    CacheMarkerPart,
    CitationPart,
    DataPart,
    ImagePart,
    ModelDescriptor,
    PerformanceTrace,
    RedactedThinkingPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
    ToolResultPart,
    WireRequest,
    estimate_token_count,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from chatbridge.config import ModelConfig, ProviderConfig
    from chatbridge.types import (
        ChatOptions,
        ContentPart,
        Credential,
        Message,
        ToolDefinition,
    )

log = logging.getLogger(__name__)

_SKIPPED_PARTS = (ThinkingPart, RedactedThinkingPart, CitationPart)


def _is_textual_mime(mime_type: str) -> bool:
    return (
        mime_type.startswith("text/")
        or mime_type == "application/json"
        or mime_type.endswith("+json")
    )


def _merge_key(message: dict[str, Any]) -> str:
    # Tool and system messages are never merged.
    role = message["role"]
    return role if role in ("user", "assistant") else f"{role}:{id(message)}"


def _merge_messages(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    merged = {"role": a["role"], "content": (a.get("content") or []) + (b.get("content") or [])}
    calls = (a.get("tool_calls") or []) + (b.get("tool_calls") or [])
    if calls:
        merged["tool_calls"] = calls
    if a["role"] == "assistant" and not merged["content"]:
        merged["content"] = None
    return merged


class OpenAIChatAdapter:
    """OpenAI-compatible ``/chat/completions`` over raw HTTP."""

    type = "openai-chat-completion"

    def __init__(
        self,
        provider: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize for one provider configuration."""
        self.provider = provider
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = make_client(self.provider, self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def estimate_token_count(self, text: str) -> int:
        return estimate_token_count(text)

    @property
    def base_url(self) -> str:
        return ensure_versioned_base_url(self.provider.base_url)

    def _headers(
        self, credential: Credential | None, model: ModelConfig | None = None
    ) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if credential is not None and credential.token:
            headers["Authorization"] = f"Bearer {credential.token}"
        return merge_headers(
            headers,
            self.provider.extra_headers,
            model.extra_headers if model is not None else None,
        )

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _content_parts(
        self,
        parts: Sequence[ContentPart],
        *,
        cache_control: bool,
        allow_images: bool,
    ) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, TextPart):
                if part.text.strip():
                    content.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                if not allow_images:
                    raise RequestValidationError(
                        "Images are only supported in user messages for "
                        "OpenAI chat completions"
                    )
                content.append({"type": "image_url", "image_url": {"url": image_data_uri(part)}})
            elif isinstance(part, CacheMarkerPart):
                if cache_control:
                    for previous in reversed(content):
                        if previous.get("type") == "text":
                            previous["cache_control"] = dict(EPHEMERAL_CACHE_CONTROL)
                            break
            elif isinstance(part, DataPart):
                if not _is_textual_mime(part.mime_type):
                    raise RequestValidationError(
                        f"Unsupported data part mime type for OpenAI: {part.mime_type}"
                    )
                content.append({"type": "text", "text": json.dumps(part.data)})
            elif isinstance(part, (*_SKIPPED_PARTS, ToolCallPart, ToolResultPart)):
                continue
            else:
                raise RequestValidationError(
                    f"Unsupported content part for OpenAI: {type(part).__name__}"
                )
        return content

    @staticmethod
    def _tool_result_text(part: ToolResultPart) -> str:
        chunks: list[str] = []
        for item in part.content:
            if isinstance(item, TextPart):
                chunks.append(item.text)
            elif isinstance(item, ImagePart):
                raise RequestValidationError(
                    "Image tool results are not supported by OpenAI chat completions",
                    hint="Return the image in a user message instead.",
                )
        return "\n".join(chunks)

    def convert_messages(
        self, messages: Sequence[Message], model: ModelConfig
    ) -> list[dict[str, Any]]:
        cache_control = is_feature_supported(
            FeatureId.OPENAI_CACHE_CONTROL, self.provider, model
        )
        result: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                content = self._content_parts(
                    message.content, cache_control=cache_control, allow_images=False
                )
                if content:
                    result.append({"role": "system", "content": content})
            elif message.role == "user":
                content = self._content_parts(
                    message.content, cache_control=cache_control, allow_images=True
                )
                if content:
                    result.append({"role": "user", "content": content})
                for part in message.content:
                    if isinstance(part, ToolResultPart):
                        result.append(
                            {
                                "role": "tool",
                                "tool_call_id": part.call_id,
                                "content": self._tool_result_text(part),
                            }
                        )
            else:
                content = self._content_parts(
                    message.content, cache_control=cache_control, allow_images=False
                )
                calls = [
                    {
                        "id": part.call_id,
                        "type": "function",
                        "function": {"name": part.name, "arguments": json.dumps(part.input)},
                    }
                    for part in message.content
                    if isinstance(part, ToolCallPart)
                ]
                entry: dict[str, Any] = {"role": "assistant", "content": content or None}
                if calls:
                    entry["tool_calls"] = calls
                result.append(entry)
        merged = merge_alternating(result, role_of=_merge_key, merge=_merge_messages)
        lead = 0
        while lead < len(merged) and merged[lead]["role"] == "system":
            lead += 1
        return merged[:lead] + ensure_user_first(
            merged[lead:],
            role_of=lambda m: m["role"],
            make_placeholder=lambda: {
                "role": "user",
                "content": [{"type": "text", "text": PLACEHOLDER_USER_TEXT}],
            },
        )

    @staticmethod
    def convert_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema
                    or {"type": "object", "properties": {}, "required": []},
                },
            }
            for tool in tools
        ]

    def build_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        options: ChatOptions,
        credential: Credential,
    ) -> WireRequest:
        tools = self.convert_tools(options.tools)
        body: dict[str, Any] = {
            "model": model.base_id,
            "messages": self.convert_messages(messages, model),
        }
        if is_feature_supported(
            FeatureId.OPENAI_ONLY_USE_MAX_COMPLETION_TOKENS, self.provider, model
        ):
            body["max_completion_tokens"] = model.max_output_tokens
        else:
            body["max_tokens"] = model.max_output_tokens
            body["max_completion_tokens"] = model.max_output_tokens
        if model.temperature is not None:
            body["temperature"] = model.temperature
        if model.top_p is not None:
            body["top_p"] = model.top_p
        if model.frequency_penalty is not None:
            body["frequency_penalty"] = model.frequency_penalty
        if model.presence_penalty is not None:
            body["presence_penalty"] = model.presence_penalty
        if model.parallel_tool_calling is not None:
            body["parallel_tool_calls"] = model.parallel_tool_calling
        if tools:
            body["tools"] = tools
            choice = resolve_tool_choice(
                options.tool_mode, [t["function"]["name"] for t in tools]
            )
            if isinstance(choice, Forced):
                body["tool_choice"] = {"type": "function", "function": {"name": choice.name}}
            elif choice is ANY:
                body["tool_choice"] = "required"
            elif choice is NONE:
                body["tool_choice"] = "none"
        elif options.tool_mode == "required":
            resolve_tool_choice(options.tool_mode, [])

        if model.stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        else:
            body["stream"] = False

        body = deep_merge(deep_merge(body, self.provider.extra_body), model.extra_body)
        return WireRequest(
            url=f"{self.base_url}/chat/completions",
            headers=self._headers(credential, model),
            body=body,
            stream=bool(body.get("stream")),
        )

    # ------------------------------------------------------------------
    # Response decoding
    # ------------------------------------------------------------------

    async def stream_chat(
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
        """Send a chat request and yield canonical parts as they arrive."""
        trace = trace if trace is not None else PerformanceTrace()
        cancel = cancel if cancel is not None else CancellationToken()
        logger = logger if logger is not None else RequestLogger(request_id)

        wire = self.build_request(model, messages, options, credential)
        logger.provider_request(
            provider=self.provider.name,
            endpoint=wire.url,
            headers=wire.headers,
            body=wire.body,
            model_id=model.id,
        )
        try:
            async with open_response(
                self._get_client(),
                wire,
                provider=self.provider,
                trace=trace,
                cancel=cancel,
                logger=logger,
            ) as response:
                if wire.stream and is_event_stream(response):
                    async with contextlib.aclosing(
                        self._decode_stream(
                            response, trace=trace, cancel=cancel, logger=logger
                        )
                    ) as parts:
                        async for part in parts:
                            if cancel.is_cancelled:
                                return
                            trace.mark_first_token()
                            yield part
                else:
                    data = await read_json(response, logger=logger, provider=self.type)
                    for part in self._decode_completion(data, trace=trace, logger=logger):
                        if cancel.is_cancelled:
                            return
                        trace.mark_first_token()
                        yield part
        except RequestCancelled:
            return

    async def _decode_stream(
        self,
        response: httpx.Response,
        *,
        trace: PerformanceTrace,
        cancel: CancellationToken,
        logger: RequestLogger,
    ) -> AsyncIterator[ContentPart]:
        completion_tokens: int | None = None
        with ToolCallAccumulator() as tools:
            async for chunk in iter_response_events(
                response, cancel=cancel, logger=logger, provider=self.type
            ):
                usage = chunk.get("usage")
                if isinstance(usage, dict):
                    logger.usage(usage)
                    if isinstance(usage.get("completion_tokens"), int):
                        completion_tokens = usage["completion_tokens"]

                choices = chunk.get("choices") or []
                if not choices:
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}

                content = delta.get("content")
                if isinstance(content, str) and content:
                    yield TextPart(content)

                for call in delta.get("tool_calls") or []:
                    if call.get("type") not in (None, "function"):
                        continue
                    function = call.get("function") or {}
                    emitted = tools.update(
                        call.get("index", 0),
                        call_id=call.get("id"),
                        name=function.get("name"),
                        fragment=function.get("arguments"),
                    )
                    if emitted is not None:
                        yield emitted

                finish_reason = choice.get("finish_reason")
                if finish_reason == "tool_calls":
                    for emitted in tools.finish():
                        yield emitted

            if not cancel.is_cancelled:
                for emitted in tools.finish():
                    yield emitted
        trace.record_output_tokens(completion_tokens)

    def _decode_completion(
        self, data: Any, *, trace: PerformanceTrace, logger: RequestLogger
    ) -> list[ContentPart]:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise APIError(
                "OpenAI response did not include any choices",
                provider=self.type,
                phase="decode",
                retryable=False,
                body=json.dumps(data, default=str),
            )
        message = choices[0].get("message") or {}
        parts: list[ContentPart] = []
        content = message.get("content")
        if isinstance(content, str) and content:
            parts.append(TextPart(content))
        for call in message.get("tool_calls") or []:
            function = call.get("function")
            if call.get("type") != "function" or not function:
                continue
            try:
                arguments = json.loads(function.get("arguments") or "{}")
            except ValueError:
                arguments = {}
            parts.append(
                ToolCallPart(
                    call_id=call.get("id", ""),
                    name=function.get("name", ""),
                    input=arguments if isinstance(arguments, dict) else {},
                )
            )
        usage = data.get("usage") or {}
        if usage:
            logger.usage(usage)
        tokens = usage.get("completion_tokens")
        trace.record_output_tokens(tokens if isinstance(tokens, int) else None)
        return parts

    async def list_models(self, credential: Credential) -> list[ModelDescriptor]:
        client = self._get_client()
        request = client.build_request(
            "GET", f"{self.base_url}/models", headers=self._headers(credential)
        )
        try:
            response = await send_with_retry(
                client, request, policy=self.provider.retry, stream=False
            )
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, provider=self.type, phase="list_models") from e
        if response.is_error:
            await raise_for_response(response, provider=self.type, phase="list_models")
        data = response.json()
        log.debug("Listed %d models from %s", len(data.get("data") or []), self.base_url)
        return [ModelDescriptor(id=entry["id"]) for entry in data.get("data") or []]
