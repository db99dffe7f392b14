"""Exception hierarchy for chatbridge."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

#: Upstream response bodies are truncated to this many characters in errors.
MAX_ERROR_BODY_CHARS = 2000


class ChatBridgeError(Exception):
    """Base exception for all chatbridge errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ChatBridgeError):
    """Configuration validation or resolution failed."""


class RequestValidationError(ChatBridgeError):
    """The caller's request violates a backend contract.

    Raised synchronously, before any network call is made.
    """


class CredentialError(ChatBridgeError):
    """Credential resolution failed. Fatal for the request, never retried."""


class APIError(ChatBridgeError):
    """An upstream HTTP call failed.

    Carries enough context (status, truncated body, provider, phase) for a
    caller-side logger to reconstruct what was sent and received.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        body: str | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.body = truncate_body(body) if body is not None else None
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class StreamError(ChatBridgeError):
    """A streaming response failed after bytes were already delivered.

    Never retried: retrying would duplicate parts the caller has seen.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        provider: str | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.provider = provider
        self.error_type = error_type


class RequestCancelled(ChatBridgeError):
    """The caller cancelled the request.

    Internal signal between the transport and adapters; adapters end their
    sequence quietly instead of propagating it.
    """

    def __init__(self, message: str = "request cancelled") -> None:
        super().__init__(message)


def truncate_body(body: str, limit: int = MAX_ERROR_BODY_CHARS) -> str:
    """Trim an upstream body so error messages stay readable."""
    if len(body) <= limit:
        return body
    return f"{body[:limit]}… [truncated {len(body) - limit} chars]"


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
