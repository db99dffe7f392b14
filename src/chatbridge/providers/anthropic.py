"""Anthropic Messages API adapter."""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from chatbridge.cancellation import CancellationToken
from chatbridge.errors import RequestCancelled, RequestValidationError, StreamError
from chatbridge.features import FeatureId, is_feature_supported
from chatbridge.normalize import (
    EPHEMERAL_CACHE_CONTROL,
    PLACEHOLDER_USER_TEXT,
    attach_cache_marker,
    ensure_user_first,
    merge_alternating,
    split_system,
    system_has_cache_marker,
)
from chatbridge.providers._errors import raise_for_response, wrap_transport_error
from chatbridge.providers._utils import (
    deep_merge,
    image_base64,
    is_event_stream,
    iter_response_events,
    make_client,
    merge_headers,
    normalize_base_url,
    open_response,
    read_json,
)
from chatbridge.request_log import RequestLogger
from chatbridge.retry import send_with_retry
from chatbridge.streaming import ToolCallAccumulator
from chatbridge.thinking import ThinkingReconstructor
from chatbridge.tool_choice import ANY, AUTO, NONE, Forced, resolve_tool_choice
from chatbridge.types import (
    WEB_SEARCH_TOOL_RESULT_MIME,
    WEB_SEARCH_TOOL_USE_MIME,
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
    from chatbridge.tool_choice import ToolChoice
    from chatbridge.types import (
        ChatOptions,
        ContentPart,
        Credential,
        Message,
        ToolDefinition,
    )

log = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"
CONTEXT_MANAGEMENT_BETA = "context-management-2025-06-27"
MEMORY_TOOL_TYPE = "memory_20250818"
WEB_SEARCH_TOOL_TYPE = "web_search_20250305"

MIN_THINKING_BUDGET = 1024
MAX_THINKING_BUDGET = 32000

# Blocks that reject cache_control.
_NO_CACHE_BLOCK_TYPES = frozenset(
    {"thinking", "redacted_thinking", "server_tool_use", "web_search_tool_result"}
)
_DATA_BLOCK_MIMES = {
    WEB_SEARCH_TOOL_USE_MIME: "server_tool_use",
    WEB_SEARCH_TOOL_RESULT_MIME: "web_search_tool_result",
}
_EMPTY_INPUT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}, "required": []}


def _supports_cache_control(block: dict[str, Any]) -> bool:
    return block.get("type") not in _NO_CACHE_BLOCK_TYPES


def _image_block(part: ImagePart) -> dict[str, Any]:
    if part.url is not None:
        return {"type": "image", "source": {"type": "url", "url": part.url}}
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": part.mime_type,
            "data": image_base64(part),
        },
    }


def thinking_budget(budget: int | None, max_tokens: int) -> int:
    """Clamp a thinking budget into ``[1024, min(32000, max_tokens - 1)]``."""
    normalized = max(MIN_THINKING_BUDGET, budget or 0)
    return min(MAX_THINKING_BUDGET, max_tokens - 1, normalized)


class AnthropicAdapter:
    """Anthropic Messages API over raw HTTP with SSE streaming."""

    type = "anthropic"

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
        """Lazily create and return the pooled HTTP client."""
        if self._client is None:
            self._client = make_client(self.provider, self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def estimate_token_count(self, text: str) -> int:
        return estimate_token_count(text)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _headers(
        self,
        credential: Credential | None,
        model: ModelConfig | None = None,
        betas: Sequence[str] = (),
    ) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": ANTHROPIC_VERSION,
        }
        if credential is not None and credential.token:
            headers["x-api-key"] = credential.token
        if betas:
            headers["anthropic-beta"] = ",".join(betas)
        return merge_headers(
            headers,
            self.provider.extra_headers,
            model.extra_headers if model is not None else None,
        )

    def _convert_tool_result(self, part: ToolResultPart) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        for item in part.content:
            if isinstance(item, TextPart):
                if item.text.strip():
                    content.append({"type": "text", "text": item.text})
            elif isinstance(item, ImagePart):
                content.append(_image_block(item))
            elif isinstance(item, CacheMarkerPart):
                attach_cache_marker(content, lambda _block: False)
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": part.call_id,
            "content": content or "",
        }
        if part.is_error is not None:
            block["is_error"] = part.is_error
        return block

    def _convert_content(self, parts: Sequence[ContentPart]) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        for part in parts:
            if isinstance(part, TextPart):
                if part.text.strip():
                    blocks.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                blocks.append(_image_block(part))
            elif isinstance(part, ToolCallPart):
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": part.call_id,
                        "name": part.name,
                        "input": part.input,
                    }
                )
            elif isinstance(part, ToolResultPart):
                blocks.append(self._convert_tool_result(part))
            elif isinstance(part, ThinkingPart):
                blocks.append(
                    {"type": "thinking", "thinking": part.text, "signature": part.signature}
                )
            elif isinstance(part, RedactedThinkingPart):
                blocks.append({"type": "redacted_thinking", "data": part.data})
            elif isinstance(part, CacheMarkerPart):
                attach_cache_marker(blocks, _supports_cache_control)
            elif isinstance(part, DataPart):
                block_type = _DATA_BLOCK_MIMES.get(part.mime_type)
                if block_type is None:
                    raise RequestValidationError(
                        f"Unsupported data part mime type: {part.mime_type}",
                        hint="Only web search tool use/result data parts can be replayed.",
                    )
                blocks.append({**part.data, "type": block_type})
            elif isinstance(part, CitationPart):
                # Citations are attached server-side; nothing to replay.
                continue
            else:
                raise RequestValidationError(
                    f"Unsupported content part: {type(part).__name__}"
                )
        return blocks

    def convert_messages(
        self, messages: Sequence[Message]
    ) -> tuple[str | list[dict[str, Any]] | None, list[dict[str, Any]]]:
        """Return ``(system, messages)`` in Anthropic wire shape."""
        system_text, rest = split_system(messages)
        system: str | list[dict[str, Any]] | None = system_text
        if system_text is not None and system_has_cache_marker(messages):
            system = [
                {
                    "type": "text",
                    "text": system_text,
                    "cache_control": dict(EPHEMERAL_CACHE_CONTROL),
                }
            ]

        converted = []
        for message in rest:
            blocks = self._convert_content(message.content)
            if blocks:
                converted.append({"role": message.role, "content": blocks})

        merged = merge_alternating(
            converted,
            role_of=lambda m: m["role"],
            merge=lambda a, b: {"role": a["role"], "content": a["content"] + b["content"]},
        )
        return system, ensure_user_first(
            merged,
            role_of=lambda m: m["role"],
            make_placeholder=lambda: {
                "role": "user",
                "content": [{"type": "text", "text": PLACEHOLDER_USER_TEXT}],
            },
        )

    def convert_tools(
        self, tools: Sequence[ToolDefinition], model: ModelConfig
    ) -> tuple[list[dict[str, Any]], bool]:
        """Return ``(tools, uses_memory_tool)``.

        A local ``memory`` tool is swapped for the native memory tool, and
        the native web search tool is appended when enabled and no local
        ``web_search`` tool exists.
        """
        memory_native = model.memory_tool and is_feature_supported(
            FeatureId.ANTHROPIC_MEMORY_TOOL, self.provider, model
        )
        result: list[dict[str, Any]] = []
        has_memory = False
        has_local_web_search = False
        for tool in tools:
            if tool.name == "memory" and memory_native:
                log.debug("Replacing local memory tool with %s", MEMORY_TOOL_TYPE)
                has_memory = True
                result.append({"type": MEMORY_TOOL_TYPE, "name": "memory"})
                continue
            if tool.name == "web_search":
                has_local_web_search = True
            entry: dict[str, Any] = {
                "name": tool.name,
                "input_schema": tool.input_schema or dict(_EMPTY_INPUT_SCHEMA),
            }
            if tool.description:
                entry["description"] = tool.description
            result.append(entry)

        web = model.web_search
        if (
            web is not None
            and web.enabled
            and not has_local_web_search
            and is_feature_supported(FeatureId.ANTHROPIC_WEB_SEARCH, self.provider, model)
        ):
            native: dict[str, Any] = {"type": WEB_SEARCH_TOOL_TYPE, "name": "web_search"}
            if web.max_uses is not None:
                native["max_uses"] = web.max_uses
            if web.allowed_domains:
                native["allowed_domains"] = list(web.allowed_domains)
            elif web.blocked_domains:
                native["blocked_domains"] = list(web.blocked_domains)
            if web.user_location:
                native["user_location"] = dict(web.user_location)
            result.append(native)
        return result, has_memory

    @staticmethod
    def _wire_tool_choice(choice: ToolChoice) -> dict[str, str] | None:
        if choice is None:
            return None
        if isinstance(choice, Forced):
            return {"type": "tool", "name": choice.name}
        if choice is ANY:
            return {"type": "any"}
        if choice is AUTO:
            return {"type": "auto"}
        if choice is NONE:
            return {"type": "none"}
        return None

    def build_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        options: ChatOptions,
        credential: Credential,
    ) -> WireRequest:
        thinking_enabled = model.thinking_enabled
        has_tools = bool(options.tools)
        interleaved = (
            thinking_enabled
            and model.interleaved_thinking
            and has_tools
            and is_feature_supported(
                FeatureId.ANTHROPIC_INTERLEAVED_THINKING, self.provider, model
            )
        )

        system, wire_messages = self.convert_messages(messages)
        web_search_enabled = model.web_search is not None and model.web_search.enabled
        tools: list[dict[str, Any]] = []
        has_memory = False
        if has_tools or web_search_enabled:
            tools, has_memory = self.convert_tools(options.tools, model)

        betas: list[str] = []
        if interleaved:
            betas.append(INTERLEAVED_THINKING_BETA)
        if has_memory:
            betas.append(CONTEXT_MANAGEMENT_BETA)

        choice = resolve_tool_choice(
            options.tool_mode,
            [t["name"] for t in tools],
            thinking_enabled=thinking_enabled,
        )

        max_tokens = model.max_output_tokens
        body: dict[str, Any] = {
            "model": model.base_id,
            "messages": wire_messages,
            "max_tokens": max_tokens,
            "stream": model.stream,
        }
        if system:
            body["system"] = system
        if tools:
            body["tools"] = tools
        tool_choice = self._wire_tool_choice(choice)
        if tool_choice is not None and tools:
            body["tool_choice"] = tool_choice
        if model.temperature is not None:
            body["temperature"] = model.temperature
        if model.top_k is not None:
            body["top_k"] = model.top_k
        if model.top_p is not None:
            body["top_p"] = model.top_p

        if thinking_enabled and model.thinking is not None:
            budget = model.thinking.budget_tokens
            if interleaved:
                # Interleaved thinking may exceed max_tokens.
                budget = budget or MIN_THINKING_BUDGET
            else:
                if budget is not None and budget >= max_tokens:
                    raise RequestValidationError(
                        f"thinking budget ({budget}) must be less than "
                        f"max_output_tokens ({max_tokens})",
                        hint="Lower thinking.budget_tokens or raise max_output_tokens.",
                    )
                budget = thinking_budget(budget, max_tokens)
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}

        body = deep_merge(deep_merge(body, self.provider.extra_body), model.extra_body)
        return WireRequest(
            url=f"{normalize_base_url(self.provider.base_url)}/v1/messages",
            headers=self._headers(credential, model, betas),
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
                if is_event_stream(response):
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
                    for part in self._decode_message(data, trace=trace, logger=logger):
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
        kinds: dict[int, str] = {}
        redacted: dict[int, str] = {}
        web_results: dict[int, dict[str, Any]] = {}
        server_calls: dict[int, ToolCallPart] = {}
        thinking = ThinkingReconstructor()
        output_tokens: int | None = None

        with ToolCallAccumulator() as tools, ToolCallAccumulator() as server_tools:
            try:
                async for event in iter_response_events(
                    response, cancel=cancel, logger=logger, provider=self.type
                ):
                    kind = event.get("type")
                    index = event.get("index", 0)

                    if kind == "content_block_start":
                        block = event.get("content_block") or {}
                        block_type = block.get("type", "")
                        kinds[index] = block_type
                        if block_type == "tool_use":
                            tools.start(index, block.get("id"), block.get("name"))
                        elif block_type == "server_tool_use":
                            server_tools.start(index, block.get("id"), block.get("name"))
                        elif block_type == "thinking":
                            thinking.start(
                                index, block.get("thinking", ""), block.get("signature", "")
                            )
                        elif block_type == "redacted_thinking":
                            redacted[index] = block.get("data", "")
                        elif block_type == "web_search_tool_result":
                            web_results[index] = block
                        elif block_type == "text":
                            citations = block.get("citations")
                            if citations:
                                yield CitationPart(tuple(citations))
                            if block.get("text"):
                                yield TextPart(block["text"])

                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        delta_type = delta.get("type")
                        if delta_type == "text_delta":
                            if delta.get("text"):
                                yield TextPart(delta["text"])
                        elif delta_type == "input_json_delta":
                            fragment = delta.get("partial_json", "")
                            if index in tools:
                                call = tools.append(index, fragment)
                                if call is not None:
                                    yield call
                            elif index in server_tools:
                                early = server_tools.append(index, fragment)
                                if early is not None:
                                    server_calls[index] = early
                        elif delta_type == "thinking_delta":
                            thinking.add_text(index, delta.get("thinking", ""))
                        elif delta_type == "signature_delta":
                            thinking.add_signature(index, delta.get("signature", ""))
                        elif delta_type == "citations_delta":
                            citation = delta.get("citation")
                            if citation:
                                yield CitationPart((citation,))

                    elif kind == "content_block_stop":
                        block_type = kinds.pop(index, "")
                        if block_type == "tool_use":
                            call = tools.stop(index)
                            if call is not None:
                                yield call
                        elif block_type == "server_tool_use":
                            use = server_tools.stop(index) or server_calls.pop(index, None)
                            if use is not None:
                                yield self._server_tool_use_part(use)
                        elif block_type == "thinking":
                            part = thinking.stop(index)
                            if part is not None:
                                yield part
                        elif block_type == "redacted_thinking":
                            yield thinking.redacted(redacted.pop(index, ""))
                        elif block_type == "web_search_tool_result":
                            yield DataPart(WEB_SEARCH_TOOL_RESULT_MIME, web_results.pop(index))

                    elif kind == "message_start":
                        usage = (event.get("message") or {}).get("usage")
                        if usage:
                            logger.detail("Input usage: %s", usage)

                    elif kind == "message_delta":
                        usage = event.get("usage") or {}
                        if isinstance(usage.get("output_tokens"), int):
                            output_tokens = usage["output_tokens"]
                            logger.usage(usage)

                    elif kind == "error":
                        error = event.get("error") or {}
                        raise StreamError(
                            f"Stream error: {error.get('message', 'unknown error')}",
                            provider=self.type,
                            error_type=error.get("type"),
                        )
            finally:
                thinking.clear()
        trace.record_output_tokens(output_tokens)

    @staticmethod
    def _server_tool_use_part(call: ToolCallPart) -> DataPart:
        return DataPart(
            WEB_SEARCH_TOOL_USE_MIME,
            {
                "type": "server_tool_use",
                "id": call.call_id,
                "name": call.name,
                "input": call.input,
            },
        )

    def _decode_message(
        self, data: Any, *, trace: PerformanceTrace, logger: RequestLogger
    ) -> list[ContentPart]:
        parts: list[ContentPart] = []
        if not isinstance(data, dict):
            return parts
        for block in data.get("content") or []:
            block_type = block.get("type")
            if block_type == "text":
                if block.get("citations"):
                    parts.append(CitationPart(tuple(block["citations"])))
                if block.get("text"):
                    parts.append(TextPart(block["text"]))
            elif block_type == "tool_use":
                parts.append(
                    ToolCallPart(
                        call_id=block.get("id", ""),
                        name=block.get("name", ""),
                        input=block.get("input") or {},
                    )
                )
            elif block_type == "server_tool_use":
                parts.append(DataPart(WEB_SEARCH_TOOL_USE_MIME, block))
            elif block_type == "web_search_tool_result":
                parts.append(DataPart(WEB_SEARCH_TOOL_RESULT_MIME, block))
            elif block_type == "thinking":
                if block.get("signature"):
                    parts.append(
                        ThinkingPart(text=block.get("thinking", ""), signature=block["signature"])
                    )
            elif block_type == "redacted_thinking":
                parts.append(ThinkingReconstructor.redacted(block.get("data", "")))
        usage = data.get("usage") or {}
        if usage:
            logger.usage(usage)
        output_tokens = usage.get("output_tokens")
        trace.record_output_tokens(output_tokens if isinstance(output_tokens, int) else None)
        return parts

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    async def list_models(self, credential: Credential) -> list[ModelDescriptor]:
        """Walk the paginated ``/v1/models`` listing."""
        client = self._get_client()
        base = normalize_base_url(self.provider.base_url)
        headers = self._headers(credential)
        models: list[ModelDescriptor] = []
        after_id: str | None = None
        while True:
            url = f"{base}/v1/models"
            if after_id:
                url = f"{url}?{urlencode({'after_id': after_id})}"
            request = client.build_request("GET", url, headers=headers)
            try:
                response = await send_with_retry(
                    client, request, policy=self.provider.retry, stream=False
                )
            except httpx.HTTPError as e:
                raise wrap_transport_error(e, provider=self.type, phase="list_models") from e
            if response.is_error:
                await raise_for_response(response, provider=self.type, phase="list_models")
            data = response.json()
            for entry in data.get("data") or []:
                models.append(
                    ModelDescriptor(id=entry["id"], name=entry.get("display_name"))
                )
            if data.get("has_more") and data.get("last_id"):
                after_id = data["last_id"]
            else:
                return models
