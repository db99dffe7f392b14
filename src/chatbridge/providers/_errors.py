"""Shared provider-side error helpers.

Adapters map upstream failures into ``APIError`` with stable metadata
(status, truncated body, provider, phase) so callers never parse messages.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

import httpx

from chatbridge._http import RETRYABLE_STATUS_CODES
from chatbridge.errors import (
    APIError,
    RateLimitError,
    _walk_exception_chain,
)
from chatbridge.retry import retry_after_s

if TYPE_CHECKING:
    from collections.abc import Callable

    ErrorRewrite = Callable[[int, str | None], tuple[str | None, str | None]]


def extract_status_code(exc: BaseException) -> int | None:
    """Walk the exception chain to find an HTTP status code."""
    for e in _walk_exception_chain(exc):
        for attr in ("status_code", "status"):
            value = getattr(e, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(e, "response", None)
        value = getattr(response, "status_code", None)
        if isinstance(value, int) and 100 <= value <= 599:
            return value
    return None


def upstream_error_message(body: str) -> str | None:
    """Pull ``error.message`` (or a bare ``message``) out of a JSON error body."""
    try:
        data: Any = json.loads(body)
    except ValueError:
        return None
    if isinstance(data, list):
        data = next((item for item in data if isinstance(item, dict)), None)
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    message = data.get("message")
    return message if isinstance(message, str) else None


def _auth_hint(status_code: int | None) -> str | None:
    if status_code in {401, 403}:
        return "Check the provider credential and its permissions."
    return None


async def raise_for_response(
    response: httpx.Response,
    *,
    provider: str,
    phase: str,
    rewrite: ErrorRewrite | None = None,
) -> None:
    """Raise ``APIError`` for an error response, reading its body first.

    *rewrite* receives ``(status, upstream_message)`` and may return a
    replacement ``(message, hint)`` pair; ``None`` entries keep the default.
    """
    try:
        body = (await response.aread()).decode("utf-8", errors="replace")
    except httpx.HTTPError:
        body = ""
    status = response.status_code
    upstream = upstream_error_message(body)
    hint = _auth_hint(status)
    if rewrite is not None:
        new_message, new_hint = rewrite(status, upstream)
        upstream = new_message or upstream
        hint = new_hint or hint

    err_cls: type[APIError] = RateLimitError if status == 429 else APIError
    detail = upstream or body.strip() or response.reason_phrase
    raise err_cls(
        f"{provider} {phase} failed (status={status}): {detail}",
        hint=hint,
        retryable=status in RETRYABLE_STATUS_CODES,
        status_code=status,
        body=body,
        retry_after_s=retry_after_s(response),
        provider=provider,
        phase=phase,
    )


def wrap_transport_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
) -> APIError:
    """Map an httpx transport failure (no HTTP response) into ``APIError``."""
    if isinstance(exc, asyncio.CancelledError):
        raise exc
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        return exc

    hint: str | None = None
    for e in _walk_exception_chain(exc):
        if isinstance(e, httpx.ConnectTimeout):
            hint = "Connection timed out; raise the provider's connection timeout."
            break
        if isinstance(e, httpx.ReadTimeout):
            hint = "No data received within the response timeout."
            break
        if isinstance(e, httpx.ConnectError):
            hint = "Could not connect; check the provider base URL and network."
            break

    status_code = extract_status_code(exc)
    status_note = f" (status={status_code})" if status_code is not None else ""
    cause = str(exc) or type(exc).__name__
    return APIError(
        f"{provider} {phase} failed{status_note}: {cause}",
        hint=hint,
        retryable=False,
        status_code=status_code,
        provider=provider,
        phase=phase,
    )
