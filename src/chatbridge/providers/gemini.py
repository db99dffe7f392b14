"""Gemini adapter for the Antigravity (Cloud Code Assist) internal API.

The backend serves both Gemini and Claude models behind one
``v1internal:streamGenerateContent`` endpoint, authenticated with an OAuth
bearer token. Request and response shapes follow the Gemini
``GenerateContent`` API wrapped in an agent envelope.
"""

from __future__ import annotations

import contextlib
import json
import logging
import random
import re
from typing import TYPE_CHECKING, Any
import uuid

import httpx

from chatbridge.cancellation import CancellationToken
from chatbridge.errors import APIError, RequestCancelled, RequestValidationError, StreamError
from chatbridge.features import FeatureId, is_feature_supported
from chatbridge.normalize import normalize_messages, split_system
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
from chatbridge.schema import clean_json_schema, normalize_tool_parameters, sanitize_tool_name
from chatbridge.streaming import new_call_id
from chatbridge.thinking import FlaggedThinkingReconstructor, thinking_first
from chatbridge.tool_choice import ANY, NONE, Forced, resolve_tool_choice
from chatbridge.types import (
    CacheMarkerPart,
    CitationPart,
    DataPart,
    ImagePart,
    Message,
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

    from chatbridge.config import Effort, ModelConfig, ProviderConfig
    from chatbridge.providers._errors import ErrorRewrite
    from chatbridge.types import (
        ChatOptions,
        ContentPart,
        Credential,
        ToolDefinition,
    )

log = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://daily-cloudcode-pa.sandbox.googleapis.com"
API_VERSION = "v1internal"

CODE_ASSIST_HEADERS = {
    "User-Agent": "google-api-nodejs-client/9.15.1",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": json.dumps(
        {
            "ideType": "IDE_UNSPECIFIED",
            "platform": "PLATFORM_UNSPECIFIED",
            "pluginType": "GEMINI",
        },
        separators=(",", ":"),
    ),
}

BASE_SYSTEM_INSTRUCTION = (
    "You are Antigravity, a powerful agentic AI coding assistant designed by the "
    "Google Deepmind team working on Advanced Agentic Coding.You are pair "
    "programming with a USER to solve their coding task. The task may require "
    "creating a new codebase, modifying or debugging an existing codebase, or "
    "simply answering a question.**Absolute paths only****Proactiveness**"
)
TOOL_ENABLED_INSTRUCTION = (
    "When tools are provided, use tool calls instead of describing tool use. "
    "Never claim you lack tool access or permissions."
)
TOOL_DISABLED_INSTRUCTION = (
    "Do not mention tool availability or lack thereof. If tools are unavailable, "
    "respond directly without narrating tool steps."
)

#: Accepted in place of a real signature on replayed function calls.
THOUGHT_SIGNATURE_BYPASS = "skip_thought_signature_validator"
INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"
GEMINI_3_PRO_MAX_OUTPUT_TOKENS = 65535
IMAGE_MODEL_PATTERN = re.compile(r"image|imagen", re.IGNORECASE)
_GEMINI_3_PATTERN = re.compile(r"gemini[\s-]?3", re.IGNORECASE)
_ENDPOINT_SUFFIX = re.compile(rf"/{API_VERSION}(?::.*)?$", re.IGNORECASE)

_PROJECT_ADJECTIVES = ("useful", "bright", "swift", "calm", "bold")
_PROJECT_NOUNS = ("fuze", "wave", "spark", "flow", "core")

PREVIEW_ACCESS_LINK = "https://goo.gle/enable-preview-features"
CAPACITY_EXHAUSTED_MESSAGE = (
    "You have exhausted your capacity on this model. Please try again later."
)

_EFFORT_LEVELS: dict[str, str | None] = {
    "minimal": "minimal",
    "low": "low",
    "medium": "medium",
    "high": "high",
    "xhigh": "high",
    "none": None,
}


def thinking_level(effort: Effort | None) -> str | None:
    """Map a reasoning effort onto a Gemini 3 ``thinkingLevel``."""
    if effort is None:
        return None
    return _EFFORT_LEVELS.get(effort)


def resolve_model(
    model_id: str, level: str | None = None, *, thinking_enabled: bool = False
) -> tuple[str, str | None]:
    """Return ``(request_model_id, gemini3_thinking_level)`` for *model_id*.

    Claude models take a ``-thinking`` suffix when thinking is on (Opus
    always). Gemini 3 Pro text models require a ``-<level>`` tier suffix.
    Other Gemini 3 models keep their id but still get a level.
    """
    trimmed = model_id.strip()
    lower = trimmed.lower()
    if "claude" in lower:
        if "opus" in lower or thinking_enabled:
            return f"{trimmed}-thinking", None
        return trimmed, None
    if "gemini-3" not in lower:
        return trimmed, None
    effective = level or "high"
    if lower.startswith("gemini-3-pro") and not IMAGE_MODEL_PATTERN.search(trimmed):
        return f"{trimmed}-{effective}", effective
    return trimmed, effective


def synthetic_project_id() -> str:
    adjective = random.choice(_PROJECT_ADJECTIVES)  # noqa: S311
    noun = random.choice(_PROJECT_NOUNS)  # noqa: S311
    return f"{adjective}-{noun}-{uuid.uuid4().hex[:5]}"


def unwrap_payload(event: Any) -> dict[str, Any]:
    """Antigravity may nest the ``GenerateContentResponse`` under ``response``."""
    if not isinstance(event, dict):
        return {}
    nested = event.get("response")
    return nested if isinstance(nested, dict) else event


def error_rewriter(request_model: str) -> ErrorRewrite:
    """Build the error-message rewrite hook for one request."""

    def rewrite(status: int, upstream: str | None) -> tuple[str | None, str | None]:
        if status == 404 and (
            _GEMINI_3_PATTERN.search(request_model)
            or _GEMINI_3_PATTERN.search(upstream or "")
        ):
            prefix = (upstream or "").strip() or (
                "Gemini 3 preview features are not enabled for this account."
            )
            return (
                f"{prefix} Request preview access at {PREVIEW_ACCESS_LINK} "
                "before using Gemini 3 models.",
                "Enable Gemini 3 preview features for the account.",
            )
        if status == 429:
            return upstream or CAPACITY_EXHAUSTED_MESSAGE, "Wait before retrying or switch models."
        return None, None

    return rewrite


def _thinking_on(model: ModelConfig) -> bool:
    return model.thinking is not None and model.thinking.type in ("enabled", "auto")


class AntigravityAdapter:
    """Google Antigravity ``v1internal`` backend (Gemini and Claude models)."""

    type = "google-antigravity"

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
        self._fallback_project_id: str | None = None

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
    def endpoint_base(self) -> str:
        base = normalize_base_url(self.provider.base_url or DEFAULT_ENDPOINT)
        return _ENDPOINT_SUFFIX.sub("", base)

    @property
    def project_id(self) -> str:
        configured = (self.provider.project_id or "").strip()
        if configured:
            return configured
        if self._fallback_project_id is None:
            self._fallback_project_id = synthetic_project_id()
        return self._fallback_project_id

    def _headers(
        self,
        credential: Credential,
        model: ModelConfig | None = None,
        *,
        streaming: bool = False,
        thinking_enabled: bool = False,
    ) -> dict[str, str]:
        headers = merge_headers(
            {"Content-Type": "application/json", **CODE_ASSIST_HEADERS},
            self.provider.extra_headers,
            model.extra_headers if model is not None else None,
        )
        # OAuth bearer only; API-key headers would be rejected.
        for key in list(headers):
            if key.lower() in ("x-api-key", "x-goog-api-key", "authorization"):
                del headers[key]
        headers["Authorization"] = f"{credential.token_type or 'Bearer'} {credential.token}"

        if streaming:
            if not any(k.lower() == "accept" for k in headers):
                headers["Accept"] = "text/event-stream"
            if model is not None and "claude" in model.id.lower() and thinking_enabled:
                key = next((k for k in headers if k.lower() == "anthropic-beta"), None)
                existing = headers.get(key, "") if key else ""
                values = [v.strip() for v in existing.split(",") if v.strip()]
                if INTERLEAVED_THINKING_BETA not in values:
                    values.append(INTERLEAVED_THINKING_BETA)
                headers[key or "anthropic-beta"] = ",".join(values)
        return headers

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _convert_parts(
        self, message: Message, call_names: dict[str, str]
    ) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        last_signature: str | None = None
        for part in message.content:
            if isinstance(part, TextPart):
                if part.text.strip():
                    parts.append({"text": part.text})
            elif isinstance(part, ImagePart):
                parts.append(self._image_part(part))
            elif isinstance(part, ThinkingPart):
                last_signature = part.signature or last_signature
                parts.append(
                    {"thought": True, "text": part.text, "thoughtSignature": part.signature}
                )
            elif isinstance(part, ToolCallPart):
                name = sanitize_tool_name(part.name)
                call_names[part.call_id] = name
                parts.append(
                    {
                        "functionCall": {"name": name, "args": part.input, "id": part.call_id},
                        "thoughtSignature": part.thought_signature
                        or last_signature
                        or THOUGHT_SIGNATURE_BYPASS,
                    }
                )
            elif isinstance(part, ToolResultPart):
                key = "error" if part.is_error else "result"
                parts.append(
                    {
                        "functionResponse": {
                            "name": call_names.get(part.call_id, part.call_id),
                            "id": part.call_id,
                            "response": {key: part.text()},
                        }
                    }
                )
                parts.extend(
                    self._image_part(item)
                    for item in part.content
                    if isinstance(item, ImagePart)
                )
            elif isinstance(part, DataPart):
                parts.append({"text": json.dumps(part.data)})
            elif isinstance(part, RedactedThinkingPart):
                log.debug("Dropping redacted thinking part; Gemini has no equivalent")
            elif isinstance(part, (CacheMarkerPart, CitationPart)):
                continue
            else:
                raise RequestValidationError(
                    f"Unsupported content part for Antigravity: {type(part).__name__}"
                )
        return parts

    @staticmethod
    def _image_part(part: ImagePart) -> dict[str, Any]:
        if part.url is not None:
            return {"fileData": {"mimeType": part.mime_type, "fileUri": part.url}}
        return {"inlineData": {"mimeType": part.mime_type, "data": image_base64(part)}}

    def convert_messages(
        self, messages: Sequence[Message], *, thinking_first_order: bool = False
    ) -> list[dict[str, Any]]:
        """Convert the conversation (system excluded) into ``contents``."""
        call_names: dict[str, str] = {}
        contents: list[dict[str, Any]] = []
        for message in normalize_messages(messages):
            if message.role == "assistant" and thinking_first_order:
                message = Message(message.role, tuple(thinking_first(message.content)))
            parts = self._convert_parts(message, call_names)
            if not parts:
                continue
            role = "model" if message.role == "assistant" else "user"
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        return contents

    @staticmethod
    def system_instruction(system: str | None, *, has_tools: bool) -> dict[str, Any]:
        text = BASE_SYSTEM_INSTRUCTION
        if system and system.strip():
            text = f"{BASE_SYSTEM_INSTRUCTION}\n\n{system.strip()}"
        tool_text = TOOL_ENABLED_INSTRUCTION if has_tools else TOOL_DISABLED_INSTRUCTION
        return {"role": "user", "parts": [{"text": text}, {"text": tool_text}]}

    @staticmethod
    def convert_tools(tools: Sequence[ToolDefinition]) -> list[dict[str, Any]]:
        declarations = [
            {
                "name": sanitize_tool_name(tool.name),
                "description": tool.description,
                "parameters": normalize_tool_parameters(
                    clean_json_schema(tool.input_schema)
                ),
            }
            for tool in tools
        ]
        return [{"functionDeclarations": declarations}] if declarations else []

    @staticmethod
    def function_calling_config(
        options: ChatOptions, names: Sequence[str], request_model: str
    ) -> dict[str, Any] | None:
        if not names:
            return None
        choice = resolve_tool_choice(options.tool_mode, names)
        if choice is NONE:
            return {"mode": "NONE"}
        if "claude" in request_model.lower():
            return {"mode": "VALIDATED"}
        if isinstance(choice, Forced):
            return {"mode": "ANY", "allowedFunctionNames": [choice.name]}
        if choice is ANY:
            return {"mode": "ANY", "allowedFunctionNames": list(names)}
        return None

    @staticmethod
    def generation_config(
        model: ModelConfig, request_model: str, level: str | None
    ) -> dict[str, Any]:
        config: dict[str, Any] = {"maxOutputTokens": model.max_output_tokens}
        if model.temperature is not None:
            config["temperature"] = model.temperature
        if model.top_p is not None:
            config["topP"] = model.top_p
        if model.top_k is not None:
            config["topK"] = model.top_k
        if model.presence_penalty is not None:
            config["presencePenalty"] = model.presence_penalty
        if model.frequency_penalty is not None:
            config["frequencyPenalty"] = model.frequency_penalty

        thinking = model.thinking
        if thinking is not None:
            disabled = thinking.type == "disabled" or thinking.effort == "none"
            if level is not None:
                config["thinkingConfig"] = {
                    "includeThoughts": not disabled,
                    "thinkingLevel": level,
                }
            else:
                thinking_config: dict[str, Any] = {"includeThoughts": not disabled}
                budget = thinking.budget_tokens
                if not disabled and budget:
                    if config["maxOutputTokens"] <= budget:
                        raise RequestValidationError(
                            "Invalid thinking config: maxOutputTokens must be "
                            "greater than thinkingBudget",
                            hint=f"Got budget_tokens={budget}, "
                            f"max_output_tokens={config['maxOutputTokens']}.",
                        )
                    thinking_config["thinkingBudget"] = budget
                config["thinkingConfig"] = thinking_config

        lower = request_model.lower()
        if (
            lower.startswith("gemini-3-pro")
            and not IMAGE_MODEL_PATTERN.search(request_model)
            and config["maxOutputTokens"] > GEMINI_3_PRO_MAX_OUTPUT_TOKENS
        ):
            config["maxOutputTokens"] = GEMINI_3_PRO_MAX_OUTPUT_TOKENS
        return config

    def resolve(self, model: ModelConfig) -> tuple[str, str | None]:
        effort = model.thinking.effort if model.thinking is not None else None
        level = (
            thinking_level(effort)
            if model.thinking is not None and model.thinking.type != "disabled"
            else None
        )
        return resolve_model(model.base_id, level, thinking_enabled=_thinking_on(model))

    def build_request(
        self,
        model: ModelConfig,
        messages: Sequence[Message],
        options: ChatOptions,
        credential: Credential,
    ) -> WireRequest:
        request_model, level = self.resolve(model)
        thinking_on = _thinking_on(model)
        reorder = is_feature_supported(
            FeatureId.GEMINI_CLAUDE_THINKING_ORDER, self.provider, model
        )
        system, _ = split_system(messages)
        tools = self.convert_tools(options.tools)
        names = [d["name"] for tool in tools for d in tool["functionDeclarations"]]

        request: dict[str, Any] = {
            "contents": self.convert_messages(messages, thinking_first_order=reorder),
            "systemInstruction": self.system_instruction(system, has_tools=bool(names)),
            "generationConfig": self.generation_config(model, request_model, level),
        }
        if tools:
            request["tools"] = tools
        calling = self.function_calling_config(options, names, request_model)
        if calling is not None:
            request["toolConfig"] = {"functionCallingConfig": calling}
        elif not names and options.tool_mode == "required":
            resolve_tool_choice(options.tool_mode, names)

        body: dict[str, Any] = {
            "project": self.project_id,
            "model": request_model,
            "request": request,
            "requestType": "agent",
            "userAgent": "antigravity",
            "requestId": f"agent-{uuid.uuid4()}",
        }
        body = deep_merge(deep_merge(body, self.provider.extra_body), model.extra_body)

        method = "streamGenerateContent?alt=sse" if model.stream else "generateContent"
        return WireRequest(
            url=f"{self.endpoint_base}/{API_VERSION}:{method}",
            headers=self._headers(
                credential, model, streaming=model.stream, thinking_enabled=thinking_on
            ),
            body=body,
            stream=model.stream,
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
        # Tool names are sanitized on the way out; map them back for the caller.
        original_names = {sanitize_tool_name(t.name): t.name for t in options.tools}
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
                rewrite=error_rewriter(wire.body.get("model", model.base_id)),
            ) as response:
                if wire.stream and is_event_stream(response):
                    source = self._decode_stream(
                        response,
                        trace=trace,
                        cancel=cancel,
                        logger=logger,
                        names=original_names,
                    )
                else:
                    data = await read_json(response, logger=logger, provider=self.type)
                    if isinstance(data, list):
                        data = next((d for d in data if isinstance(d, dict)), {})
                    source = self._decode_single(
                        unwrap_payload(data), trace=trace, logger=logger, names=original_names
                    )
                async with contextlib.aclosing(source) as parts:
                    async for part in parts:
                        if cancel.is_cancelled:
                            return
                        trace.mark_first_token()
                        yield part
        except RequestCancelled:
            return

    def _decode_parts(
        self,
        payload: dict[str, Any],
        thinking: FlaggedThinkingReconstructor,
        names: dict[str, str],
    ) -> list[ContentPart]:
        out: list[ContentPart] = []
        candidates = payload.get("candidates") or []
        if not candidates:
            return out
        content = candidates[0].get("content") or {}
        for part in content.get("parts") or []:
            if not isinstance(part, dict):
                continue
            signature = part.get("thoughtSignature")
            if part.get("thought") is True:
                thinking.add(part.get("text") or "", signature)
                continue
            closed = thinking.close()
            if closed is not None:
                out.append(closed)
            call = part.get("functionCall")
            if isinstance(call, dict):
                name = call.get("name") or ""
                args = call.get("args")
                out.append(
                    ToolCallPart(
                        call_id=call.get("id") or new_call_id(),
                        name=names.get(name, name),
                        input=args if isinstance(args, dict) else {},
                        thought_signature=signature,
                    )
                )
                continue
            text = part.get("text")
            if isinstance(text, str) and text:
                out.append(TextPart(text))
        return out

    @staticmethod
    def _output_tokens(payload: dict[str, Any]) -> int | None:
        usage = payload.get("usageMetadata")
        if not isinstance(usage, dict):
            return None
        tokens = usage.get("candidatesTokenCount")
        return tokens if isinstance(tokens, int) else None

    def _raise_payload_error(self, payload: dict[str, Any]) -> None:
        error = payload.get("error")
        if not error:
            return
        message = error.get("message") if isinstance(error, dict) else str(error)
        status = error.get("status") if isinstance(error, dict) else None
        raise StreamError(
            f"Stream error: {message or error}",
            provider=self.type,
            error_type=status,
        )

    async def _decode_stream(
        self,
        response: httpx.Response,
        *,
        trace: PerformanceTrace,
        cancel: CancellationToken,
        logger: RequestLogger,
        names: dict[str, str],
    ) -> AsyncIterator[ContentPart]:
        thinking = FlaggedThinkingReconstructor()
        output_tokens: int | None = None
        try:
            async for event in iter_response_events(
                response, cancel=cancel, logger=logger, provider=self.type
            ):
                payload = unwrap_payload(event)
                self._raise_payload_error(payload)
                tokens = self._output_tokens(payload)
                if tokens is not None:
                    output_tokens = tokens
                    logger.usage(payload.get("usageMetadata"))
                for part in self._decode_parts(payload, thinking, names):
                    yield part
            if not cancel.is_cancelled:
                closed = thinking.close()
                if closed is not None:
                    yield closed
        finally:
            thinking.clear()
        trace.record_output_tokens(output_tokens)

    async def _decode_single(
        self,
        payload: dict[str, Any],
        *,
        trace: PerformanceTrace,
        logger: RequestLogger,
        names: dict[str, str],
    ) -> AsyncIterator[ContentPart]:
        if not payload:
            raise APIError(
                "Invalid Antigravity response payload",
                provider=self.type,
                phase="decode",
                retryable=False,
            )
        self._raise_payload_error(payload)
        thinking = FlaggedThinkingReconstructor()
        parts = self._decode_parts(payload, thinking, names)
        closed = thinking.close()
        if closed is not None:
            parts.append(closed)
        tokens = self._output_tokens(payload)
        if tokens is not None:
            logger.usage(payload.get("usageMetadata"))
        trace.record_output_tokens(tokens)
        for part in parts:
            yield part

    async def list_models(self, credential: Credential) -> list[ModelDescriptor]:
        """Models available to the account via ``fetchAvailableModels``."""
        client = self._get_client()
        request = client.build_request(
            "POST",
            f"{self.endpoint_base}/{API_VERSION}:fetchAvailableModels",
            headers=self._headers(credential),
            json={"project": self.project_id},
        )
        try:
            response = await send_with_retry(
                client, request, policy=self.provider.retry, stream=False
            )
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, provider=self.type, phase="list_models") from e
        if response.is_error:
            await raise_for_response(response, provider=self.type, phase="list_models")
        return _parse_model_listing(response.json())


def _strip_models_prefix(model_id: str) -> str:
    return model_id[len("models/") :] if model_id.startswith("models/") else model_id


def _parse_model_listing(data: Any) -> list[ModelDescriptor]:
    raw = data.get("models") if isinstance(data, dict) else None
    entries: list[tuple[str, dict[str, Any]]] = []
    if isinstance(raw, dict):
        entries = [(k, v if isinstance(v, dict) else {}) for k, v in raw.items()]
    elif isinstance(raw, list):
        entries = [
            (str(item.get("id") or item.get("name") or ""), item)
            for item in raw
            if isinstance(item, dict)
        ]
    models: list[ModelDescriptor] = []
    for key, info in entries:
        model_id = _strip_models_prefix(key)
        if model_id:
            models.append(ModelDescriptor(id=model_id, name=info.get("displayName")))
    return models


