"""Retrying HTTP transport with exponential backoff and jitter.

Retries are decided on HTTP status alone:
- Responses outside the retryable status set return immediately.
- Transport failures (no HTTP response) propagate and are never retried.
- Exhausting the budget returns the last retryable response unmodified.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
from typing import TYPE_CHECKING, Any

from chatbridge._http import RETRYABLE_STATUS_CODES
from chatbridge.errors import ConfigurationError, RequestCancelled

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

    from chatbridge.cancellation import CancellationToken
    from chatbridge.request_log import RequestLogger

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(max, initial * multiplier**attempt) ± jitter``."""

    initial_delay_s: float = 1.0
    max_delay_s: float = 60.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    max_retries: int = 10

    def __post_init__(self) -> None:
        """Validate invariants to keep retry behavior predictable."""
        if self.max_retries < 0:
            raise ConfigurationError("RetryPolicy.max_retries must be >= 0")
        if self.initial_delay_s < 0:
            raise ConfigurationError("RetryPolicy.initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            raise ConfigurationError("RetryPolicy.backoff_multiplier must be > 0")
        if self.max_delay_s < self.initial_delay_s:
            raise ConfigurationError(
                "RetryPolicy.max_delay_s must be >= initial_delay_s",
                hint=f"Got max_delay_s={self.max_delay_s}, "
                f"initial_delay_s={self.initial_delay_s}.",
            )
        if not 0 <= self.jitter_factor <= 1:
            raise ConfigurationError("RetryPolicy.jitter_factor must be in [0, 1]")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        """Build from a raw mapping; ``*Ms`` keys are milliseconds."""
        defaults = cls()

        def seconds(snake: str, camel_ms: str, default: float) -> float:
            if data.get(snake) is not None:
                return float(data[snake])
            if data.get(camel_ms) is not None:
                return float(data[camel_ms]) / 1000
            return default

        max_retries = data.get("max_retries", data.get("maxRetries"))
        multiplier = data.get("backoff_multiplier", data.get("backoffMultiplier"))
        jitter = data.get("jitter_factor", data.get("jitterFactor"))
        return cls(
            initial_delay_s=seconds(
                "initial_delay_s", "initialDelayMs", defaults.initial_delay_s
            ),
            max_delay_s=seconds("max_delay_s", "maxDelayMs", defaults.max_delay_s),
            backoff_multiplier=float(multiplier)
            if multiplier is not None
            else defaults.backoff_multiplier,
            jitter_factor=float(jitter) if jitter is not None else defaults.jitter_factor,
            max_retries=int(max_retries)
            if max_retries is not None
            else defaults.max_retries,
        )


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def compute_backoff_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (attempt starts at 0)."""
    base = min(
        policy.max_delay_s,
        policy.initial_delay_s * (policy.backoff_multiplier ** max(0, attempt)),
    )
    if base <= 0:
        return 0.0
    spread = policy.jitter_factor * base
    return max(0.0, base + random.uniform(-spread, spread))  # noqa: S311


def retry_after_s(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if not raw or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value >= 0 else None


async def send_with_retry(
    client: httpx.AsyncClient,
    request: httpx.Request,
    *,
    policy: RetryPolicy,
    cancel: CancellationToken | None = None,
    logger: RequestLogger | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    stream: bool = True,
) -> httpx.Response:
    """Send *request*, retrying on transient status codes.

    The returned response is opened with ``stream=True`` by default; the
    caller owns it and must close it. Retried responses are closed before the
    next attempt.
    """
    attempt = 0
    while True:
        if cancel is not None and cancel.is_cancelled:
            raise RequestCancelled()

        response = await client.send(request, stream=stream)
        if not is_retryable_status(response.status_code) or attempt >= policy.max_retries:
            return response

        delay = compute_backoff_delay(policy, attempt)
        retry_after = retry_after_s(response)
        if retry_after is not None:
            delay = max(delay, min(retry_after, policy.max_delay_s))

        await response.aclose()
        if logger is not None:
            logger.retry(attempt + 1, policy.max_retries, response.status_code, delay)
        else:
            log.warning(
                "Retry %d/%d after HTTP %d, waiting %.2fs",
                attempt + 1,
                policy.max_retries,
                response.status_code,
                delay,
            )

        if sleep is not None:
            await sleep(delay)
            interrupted = cancel is not None and cancel.is_cancelled
        elif cancel is not None:
            interrupted = await cancel.sleep(delay)
        else:
            await asyncio.sleep(delay)
            interrupted = False
        if interrupted:
            raise RequestCancelled()
        attempt += 1
