"""Shared utilities for provider adapters."""

from __future__ import annotations

import base64
import contextlib
import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from chatbridge._http import SSE_CONTENT_TYPE
from chatbridge.errors import (
    APIError,
    ConfigurationError,
    RequestCancelled,
    StreamError,
)
from chatbridge.providers._errors import raise_for_response, wrap_transport_error
from chatbridge.retry import send_with_retry
from chatbridge.streaming import iter_sse_events

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from chatbridge.cancellation import CancellationToken
    from chatbridge.config import ProviderConfig, TimeoutConfig
    from chatbridge.providers._errors import ErrorRewrite
    from chatbridge.request_log import RequestLogger
    from chatbridge.types import ImagePart, PerformanceTrace, WireRequest

_MESSAGES_SUFFIX = re.compile(r"/v1/messages/?$", re.IGNORECASE)
_VERSION_SUFFIX = re.compile(r"/v\d+$")


def normalize_base_url(raw: str) -> str:
    """Normalize a configured base URL.

    Trims whitespace, drops query and fragment, collapses repeated slashes
    and strips trailing slashes. Rejects empty input and URLs that already
    point at ``/v1/messages``.
    """
    trimmed = (raw or "").strip()
    if not trimmed:
        raise ConfigurationError(
            "Base URL is required", hint="Set base_url on the provider config."
        )
    parts = urlsplit(trimmed)
    if not parts.scheme or not parts.netloc:
        raise ConfigurationError(
            f"Invalid base URL: {raw!r}",
            hint="Use an absolute URL such as https://api.example.com",
        )
    path = re.sub(r"/{2,}", "/", parts.path)
    if _MESSAGES_SUFFIX.search(path):
        raise ConfigurationError(
            "Base URL should not include /v1/messages",
            hint="Use the API root, e.g. https://api.anthropic.com",
        )
    path = path.rstrip("/")
    return urlunsplit((parts.scheme, parts.netloc, path, "", "")).rstrip("/")


def ensure_versioned_base_url(raw: str) -> str:
    """Append ``/v1`` unless the base URL already ends in ``/v<digits>``."""
    base = normalize_base_url(raw)
    return base if _VERSION_SUFFIX.search(base) else f"{base}/v1"


def build_timeout(timeout: TimeoutConfig) -> httpx.Timeout:
    """Map the connection and idle budgets onto httpx."""
    return httpx.Timeout(
        connect=timeout.connection,
        read=timeout.response,
        write=timeout.response,
        pool=timeout.connection,
    )


def make_client(
    provider: ProviderConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=build_timeout(provider.timeout), transport=transport)


def merge_headers(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge header layers; later layers win, case-insensitively."""
    merged: dict[str, str] = {}
    lowered: dict[str, str] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            previous = lowered.pop(key.lower(), None)
            if previous is not None:
                merged.pop(previous, None)
            merged[key] = value
            lowered[key.lower()] = key
    return merged


def deep_merge(base: dict[str, Any], extra: Mapping[str, Any] | None) -> dict[str, Any]:
    """Recursively overlay *extra* onto a copy of *base*."""
    out = dict(base)
    for key, value in (extra or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def image_base64(part: ImagePart) -> str:
    return base64.b64encode(part.data or b"").decode("ascii")


def image_data_uri(part: ImagePart) -> str:
    """URL images pass through; inline images become ``data:`` URIs."""
    if part.url is not None:
        return part.url
    return f"data:{part.mime_type};base64,{image_base64(part)}"


def is_event_stream(response: httpx.Response) -> bool:
    return SSE_CONTENT_TYPE in response.headers.get("content-type", "")


@contextlib.asynccontextmanager
async def open_response(
    client: httpx.AsyncClient,
    wire: WireRequest,
    *,
    provider: ProviderConfig,
    trace: PerformanceTrace,
    cancel: CancellationToken,
    logger: RequestLogger,
    phase: str = "chat",
    rewrite: ErrorRewrite | None = None,
) -> AsyncIterator[httpx.Response]:
    """Send *wire* with retries and yield a successful, still-open response.

    Error statuses raise ``APIError`` after the body is read; the response is
    always closed on exit.
    """
    request = client.build_request(
        "POST", wire.url, headers=wire.headers, json=wire.body
    )
    try:
        response = await send_with_retry(
            client, request, policy=provider.retry, cancel=cancel, logger=logger
        )
    except httpx.HTTPError as e:
        raise wrap_transport_error(e, provider=provider.type, phase=phase) from e
    try:
        trace.mark_first_byte()
        logger.response_metadata(response)
        if response.is_error:
            await raise_for_response(
                response, provider=provider.type, phase=phase, rewrite=rewrite
            )
        yield response
    finally:
        await response.aclose()


async def iter_response_events(
    response: httpx.Response,
    *,
    cancel: CancellationToken,
    logger: RequestLogger,
    provider: str,
) -> AsyncIterator[dict[str, Any]]:
    """Decode an SSE body into events; transport failures become ``StreamError``."""
    try:
        async for event in iter_sse_events(response.aiter_bytes(), cancel):
            logger.chunk(event)
            yield event
    except httpx.HTTPError as e:
        if cancel.is_cancelled:
            raise RequestCancelled() from e
        raise StreamError(
            f"{provider} stream interrupted: {e}",
            provider=provider,
            error_type=type(e).__name__,
            hint="The response was cut off mid-stream; partial output was delivered.",
        ) from e


async def read_json(
    response: httpx.Response, *, logger: RequestLogger, provider: str
) -> Any:
    """Read a non-streaming body as JSON."""
    try:
        raw = await response.aread()
    except httpx.HTTPError as e:
        raise wrap_transport_error(e, provider=provider, phase="read") from e
    text = raw.decode("utf-8", errors="replace")
    logger.chunk(text)
    try:
        return json.loads(text)
    except ValueError as e:
        raise APIError(
            f"{provider} returned a non-JSON response body",
            status_code=response.status_code,
            body=text,
            provider=provider,
            phase="decode",
            retryable=False,
        ) from e
