"""Streaming primitives shared by every adapter.

- ``SSEDecoder`` frames raw bytes into JSON events (``data:`` lines).
- ``iter_sse_events`` drives the decoder from an async byte stream and stops
  as soon as the caller cancels.
- ``ToolCallAccumulator`` reassembles tool-call arguments that arrive as
  partial JSON fragments.
"""

from __future__ import annotations

import asyncio
import codecs
from dataclasses import dataclass
import json
import logging
from typing import TYPE_CHECKING, Any
import uuid

from chatbridge.types import ToolCallPart

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator
    from types import TracebackType

    from chatbridge.cancellation import CancellationToken

log = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def _parse_events(payload: str) -> list[dict[str, Any]]:
    """Parse one event payload; malformed payloads become a no-op ``{}``."""
    try:
        value = json.loads(payload)
    except ValueError:
        log.debug("Skipping malformed stream event: %.200s", payload)
        return [{}]
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        # Some Google endpoints wrap events in an array.
        items = [item for item in value if isinstance(item, dict)]
        if len(items) != len(value):
            log.debug(
                "Dropped %d non-object element(s) from stream event array",
                len(value) - len(items),
            )
        if items:
            return items
    return [{}]


class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` bodies.

    Multi-byte characters split across chunks are preserved. Events are
    delimited by a blank line; several ``data:`` lines in one event are joined
    with ``\\n``. A ``[DONE]`` payload ends the stream and everything after it
    is ignored.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._data: list[str] = []
        self.done = False

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if self.done:
            return []
        self._buffer += self._decoder.decode(chunk)
        *lines, self._buffer = self._buffer.split("\n")
        return self._process(lines)

    def close(self) -> list[dict[str, Any]]:
        """Flush any residual line and pending data as a final event."""
        if self.done:
            return []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events = self._process([tail] if tail else [])
        if not self.done:
            events.extend(self._flush())
        self.done = True
        return events

    def _process(self, lines: list[str]) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for raw in lines:
            line = raw[:-1] if raw.endswith("\r") else raw
            if not line:
                events.extend(self._flush())
            elif line.startswith("data:"):
                value = line[5:]
                self._data.append(value[1:] if value.startswith(" ") else value)
            # event:, id:, retry: and comment lines carry nothing we use.
            if self.done:
                break
        return events

    def _flush(self) -> list[dict[str, Any]]:
        if not self._data:
            return []
        payload = "\n".join(self._data)
        self._data = []
        if payload.strip() == DONE_SENTINEL:
            self.done = True
            return []
        return _parse_events(payload)


_EOF = object()
_CANCELLED = object()


async def _next_chunk(
    iterator: AsyncIterator[bytes], cancel: CancellationToken | None
) -> Any:
    """Read one chunk, racing the read against *cancel*."""
    if cancel is None:
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return _EOF

    async def _anext() -> Any:
        try:
            return await iterator.__anext__()
        except StopAsyncIteration:
            return _EOF

    read = asyncio.ensure_future(_anext())
    cancelled = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {read, cancelled}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        cancelled.cancel()
        if not read.done():
            read.cancel()
    if read in done:
        return read.result()

    await asyncio.wait({read})
    if not read.cancelled() and read.exception() is not None:
        log.debug("Read after cancellation failed: %r", read.exception())
    return _CANCELLED


async def iter_sse_events(
    chunks: AsyncIterable[bytes],
    cancel: CancellationToken | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield decoded SSE events from an async byte stream.

    Stops without error once *cancel* fires or a ``[DONE]`` event arrives.
    """
    decoder = SSEDecoder()
    iterator = chunks.__aiter__()
    while not decoder.done:
        if cancel is not None and cancel.is_cancelled:
            return
        chunk = await _next_chunk(iterator, cancel)
        if chunk is _CANCELLED:
            return
        if chunk is _EOF:
            for event in decoder.close():
                yield event
            return
        for event in decoder.feed(chunk):
            yield event


@dataclass
class _Entry:
    call_id: str | None
    name: str | None
    buffer: str = ""


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


class ToolCallAccumulator:
    """Assemble streamed tool-call arguments keyed by content-block index.

    A call is emitted as soon as its buffered arguments parse to a JSON
    object, or at ``stop``/``finish`` with an ``{}`` fallback. Each index
    emits at most once.
    """

    def __init__(self) -> None:
        self._entries: dict[int, _Entry] = {}
        self._emitted: set[int] = set()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, index: object) -> bool:
        return index in self._entries

    def start(self, index: int, call_id: str | None, name: str | None) -> None:
        self._emitted.discard(index)
        self._entries[index] = _Entry(call_id=call_id, name=name)

    def append(self, index: int, fragment: str) -> ToolCallPart | None:
        entry = self._entries.get(index)
        if entry is None:
            return None
        entry.buffer += fragment
        try:
            parsed = json.loads(entry.buffer)
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None
        return self._emit(index, parsed)

    def update(
        self,
        index: int,
        *,
        call_id: str | None = None,
        name: str | None = None,
        fragment: str | None = None,
    ) -> ToolCallPart | None:
        """Merge a delta whose id/name may arrive with the first fragment only."""
        if index in self._emitted and call_id is None:
            return None
        entry = self._entries.get(index)
        if entry is None:
            if call_id is None and name is None and not fragment:
                return None
            self.start(index, call_id, name)
            entry = self._entries[index]
        if call_id and not entry.call_id:
            entry.call_id = call_id
        if name and not entry.name:
            entry.name = name
        if fragment:
            return self.append(index, fragment)
        return None

    def stop(self, index: int) -> ToolCallPart | None:
        entry = self._entries.get(index)
        if entry is None:
            return None
        parsed: Any = {}
        if entry.buffer.strip():
            try:
                parsed = json.loads(entry.buffer)
            except ValueError:
                log.warning(
                    "Tool call %r arguments were not valid JSON; using {}",
                    entry.name,
                )
                parsed = {}
        return self._emit(index, parsed if isinstance(parsed, dict) else {})

    def finish(self) -> list[ToolCallPart]:
        """Stop every open entry in index order."""
        parts = [self.stop(index) for index in sorted(self._entries)]
        return [p for p in parts if p is not None]

    def clear(self) -> None:
        self._entries.clear()
        self._emitted.clear()

    def _emit(self, index: int, arguments: dict[str, Any]) -> ToolCallPart:
        entry = self._entries.pop(index)
        self._emitted.add(index)
        return ToolCallPart(
            call_id=entry.call_id or new_call_id(),
            name=entry.name or "",
            input=arguments,
        )

    def __enter__(self) -> ToolCallAccumulator:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.clear()
