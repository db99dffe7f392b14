"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: fake HTTP backends and stream builders
shared by the adapter and service suites.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
import json
from typing import Any

import httpx

SSE_HEADERS = {"content-type": "text/event-stream"}


def sse(*events: Any, done: bool = False) -> bytes:
    """Encode events as an SSE body; dicts are JSON-encoded."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def anthropic_sse(*events: dict[str, Any]) -> bytes:
    """Anthropic streams name each event; the decoder only reads ``data:``."""
    body = "".join(
        f"event: {event['type']}\ndata: {json.dumps(event)}\n\n" for event in events
    )
    return body.encode("utf-8")


@dataclass
class ScriptedBackend:
    """Serve a scripted sequence of responses and record every request.

    Each script item is an ``httpx.Response`` or a callable building one from
    the request. The last item repeats once the script runs out.
    """

    script: list[httpx.Response | Callable[[httpx.Request], httpx.Response]] = field(
        default_factory=list
    )
    requests: list[httpx.Request] = field(default_factory=list)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.script)) - 1
        item = self.script[index]
        return item(request) if callable(item) else item

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def json_body(self, index: int = -1) -> dict[str, Any]:
        return json.loads(self.requests[index].content)


@dataclass
class GatedStream:
    """An async byte stream that yields its chunks, then blocks until released.

    Lets a test observe the first parts of a response and cancel while the
    connection is still open.
    """

    chunks: list[bytes]
    released: asyncio.Event = field(default_factory=asyncio.Event)
    tail: list[bytes] = field(default_factory=list)

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        await self.released.wait()
        for chunk in self.tail:
            yield chunk
