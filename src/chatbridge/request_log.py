"""Per-request logging capability passed explicitly into adapters.

Start and completion lines are always emitted. Request bodies, headers and
raw stream chunks are emitted only when the logger is verbose; otherwise the
provider request is kept and replayed at error level if the request fails.
"""

from __future__ import annotations

import itertools
import json
import logging
import math
from typing import TYPE_CHECKING, Any

from chatbridge.config import verbose_from_env

if TYPE_CHECKING:
    from collections.abc import Mapping

    import httpx

    from chatbridge.types import PerformanceTrace

log = logging.getLogger(__name__)

_request_ids = itertools.count(1)


def next_request_id() -> str:
    return f"req-{next(_request_ids)}"


def mask_value(value: str | None) -> str:
    """Keep the first and last four characters of long secrets."""
    if not value:
        return ""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}…{value[-4:]}"


def mask_headers(headers: Mapping[str, str]) -> dict[str, str]:
    masked = dict(headers)
    for key, value in masked.items():
        lower = key.lower()
        if lower in ("x-api-key", "x-goog-api-key", "authorization") or "token" in lower:
            masked[key] = mask_value(value)
    return masked


def _dump(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


class RequestLogger:
    """Logging bound to one request id."""

    def __init__(
        self,
        request_id: str | None = None,
        *,
        verbose: bool | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.request_id = request_id or next_request_id()
        self.verbose = verbose_from_env() if verbose is None else verbose
        self._log = logger or log
        self._context: dict[str, Any] | None = None

    def _fmt(self, message: str) -> str:
        return f"[{self.request_id}] {message}"

    def start(self, model_id: str) -> None:
        self._log.info(self._fmt("▶ Request started for model: %s"), model_id)

    def provider_request(
        self,
        *,
        provider: str,
        endpoint: str,
        headers: Mapping[str, str],
        body: Any,
        model_id: str | None = None,
    ) -> None:
        masked = mask_headers(headers)
        label = f"{provider} ({model_id})" if model_id else provider
        self._context = {
            "label": label,
            "endpoint": endpoint,
            "headers": masked,
            "body": body,
            "logged": False,
        }
        if self.verbose:
            self._log.info(self._fmt("→ %s %s"), label, endpoint)
            self._log.info(self._fmt("Provider Request Headers:\n%s"), _dump(masked))
            self._log.info(self._fmt("Provider Request Body:\n%s"), _dump(body))
            self._context["logged"] = True

    def response_metadata(self, response: httpx.Response) -> None:
        content_type = response.headers.get("content-type", "unknown")
        message = self._fmt(
            f"← Status {response.status_code} {response.reason_phrase} ({content_type})"
        )
        if response.is_error:
            self._log_context()
            self._log.error(message)
        elif self.verbose:
            self._log.info(message)

    def chunk(self, data: Any) -> None:
        if self.verbose:
            self._log.info(self._fmt("⇦ %s"), data if isinstance(data, str) else _dump(data))

    def detail(self, message: str, *args: Any) -> None:
        if self.verbose:
            self._log.info(self._fmt(message), *args)

    def usage(self, usage: Any) -> None:
        self._log.info(self._fmt("Usage: %s"), json.dumps(usage, default=str))

    def retry(self, attempt: int, max_retries: int, status: int, delay: float) -> None:
        self._log.warning(
            self._fmt("Retry %d/%d after HTTP %d, waiting %.2fs"),
            attempt,
            max_retries,
            status,
            delay,
        )

    def error(self, exc: BaseException | str) -> None:
        self._log_context()
        self._log.error(self._fmt("✕ %s"), exc)
        self._context = None

    def complete(self, trace: PerformanceTrace) -> None:
        tps = "N/A" if math.isnan(trace.tps) else f"{trace.tps:.1f}/s"
        self._log.info(
            self._fmt(
                "✓ Request completed | Time to Fetch: %.0fms, Time to First Token: "
                "%.0fms, Tokens Per Second: %s, Total Latency: %.0fms"
            ),
            trace.ttf,
            trace.ttft,
            tps,
            trace.tl,
        )
        self._context = None

    def _log_context(self) -> None:
        ctx = self._context
        if ctx is None or ctx["logged"]:
            return
        self._log.error(self._fmt("→ %s %s"), ctx["label"], ctx["endpoint"])
        self._log.error(self._fmt("Provider Request Headers:\n%s"), _dump(ctx["headers"]))
        self._log.error(self._fmt("Provider Request Body:\n%s"), _dump(ctx["body"]))
        ctx["logged"] = True


class NullRequestLogger(RequestLogger):
    """A logger that records nothing."""

    def __init__(self, request_id: str = "req-0") -> None:
        super().__init__(request_id, verbose=False)

    def start(self, model_id: str) -> None:
        pass

    def provider_request(self, **kwargs: Any) -> None:
        pass

    def response_metadata(self, response: httpx.Response) -> None:
        pass

    def chunk(self, data: Any) -> None:
        pass

    def detail(self, message: str, *args: Any) -> None:
        pass

    def usage(self, usage: Any) -> None:
        pass

    def retry(self, attempt: int, max_retries: int, status: int, delay: float) -> None:
        pass

    def error(self, exc: BaseException | str) -> None:
        pass

    def complete(self, trace: PerformanceTrace) -> None:
        pass
