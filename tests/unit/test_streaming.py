"""Streaming decoder and tool-call accumulator behavior."""

from __future__ import annotations

import asyncio
import json
import logging

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from chatbridge.cancellation import CancellationToken
from chatbridge.streaming import SSEDecoder, ToolCallAccumulator, iter_sse_events
from chatbridge.types import ToolCallPart

pytestmark = pytest.mark.unit


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _collect(stream) -> list:
    return [item async for item in stream]


# =============================================================================
# SSE Decoder
# =============================================================================


def test_decoder_frames_events_on_blank_lines() -> None:
    decoder = SSEDecoder()
    events = decoder.feed(b'data: {"a": 1}\n\ndata: {"b": 2}\n\n')
    assert events == [{"a": 1}, {"b": 2}]


def test_decoder_buffers_partial_lines_across_chunks() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(b'data: {"te') == []
    assert decoder.feed(b'xt": "hi"}\n') == []
    assert decoder.feed(b"\n") == [{"text": "hi"}]


def test_decoder_keeps_multibyte_characters_split_across_chunks() -> None:
    payload = 'data: {"text": "héllo ✓"}\n\n'.encode()
    split = payload.index("✓".encode()) + 1
    decoder = SSEDecoder()
    events = decoder.feed(payload[:split]) + decoder.feed(payload[split:])
    assert events == [{"text": "héllo ✓"}]


def test_decoder_handles_crlf_and_ignores_non_data_fields() -> None:
    decoder = SSEDecoder()
    events = decoder.feed(
        b'event: message_start\r\nid: 7\r\n: keep-alive\r\ndata: {"ok": true}\r\n\r\n'
    )
    assert events == [{"ok": True}]


def test_decoder_joins_multiline_data_with_newline() -> None:
    decoder = SSEDecoder()
    events = decoder.feed(b'data: {"a":\ndata: 1}\n\n')
    assert events == [{"a": 1}]


def test_decoder_stops_at_done_sentinel() -> None:
    decoder = SSEDecoder()
    events = decoder.feed(b'data: {"a": 1}\n\ndata: [DONE]\n\ndata: {"b": 2}\n\n')
    assert events == [{"a": 1}]
    assert decoder.done
    assert decoder.feed(b'data: {"c": 3}\n\n') == []


def test_decoder_turns_malformed_payloads_into_empty_events() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(b"data: {not json\n\n") == [{}]


def test_decoder_unwraps_single_element_arrays() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(b'data: [{"x": 1}]\n\n') == [{"x": 1}]


def test_decoder_emits_every_object_in_an_array(caplog: pytest.LogCaptureFixture) -> None:
    decoder = SSEDecoder()

    with caplog.at_level(logging.DEBUG, logger="chatbridge.streaming"):
        events = decoder.feed(b'data: [{"x": 1}, 7, {"x": 2}]\n\n')

    assert events == [{"x": 1}, {"x": 2}]
    assert "Dropped 1 non-object element(s)" in caplog.text


def test_decoder_close_flushes_unterminated_event() -> None:
    decoder = SSEDecoder()
    assert decoder.feed(b'data: {"tail": true}') == []
    assert decoder.close() == [{"tail": True}]
    assert decoder.done


@given(cuts=st.lists(st.integers(min_value=1, max_value=60), max_size=8))
@settings(max_examples=10, deadline=None, derandomize=True)
def test_decoder_output_is_independent_of_chunk_boundaries(cuts: list[int]) -> None:
    body = (
        'data: {"n": 1, "s": "ünïcode"}\n\n'
        'event: ping\ndata: {"n": 2}\n\n'
        'data: {"n": 3}\n\n'
    ).encode()
    positions = sorted({c for c in cuts if c < len(body)})
    pieces = [body[a:b] for a, b in zip([0, *positions], [*positions, len(body)])]

    decoder = SSEDecoder()
    events = []
    for piece in pieces:
        events.extend(decoder.feed(piece))
    events.extend(decoder.close())

    assert [e["n"] for e in events] == [1, 2, 3]
    assert events[0]["s"] == "ünïcode"


@pytest.mark.asyncio
async def test_iter_sse_events_yields_remaining_events_at_eof() -> None:
    stream = _chunks(b'data: {"a": 1}\n\n', b'data: {"b": 2}')
    assert await _collect(iter_sse_events(stream)) == [{"a": 1}, {"b": 2}]


@pytest.mark.asyncio
async def test_iter_sse_events_returns_without_error_when_cancelled_mid_read() -> None:
    cancel = CancellationToken()
    blocked = asyncio.Event()

    async def stream():
        yield b'data: {"a": 1}\n\n'
        await blocked.wait()
        yield b'data: {"b": 2}\n\n'

    seen = []
    async for event in iter_sse_events(stream(), cancel):
        seen.append(event)
        cancel.cancel()

    assert seen == [{"a": 1}]


@pytest.mark.asyncio
async def test_iter_sse_events_does_not_read_when_already_cancelled() -> None:
    cancel = CancellationToken()
    cancel.cancel()
    assert await _collect(iter_sse_events(_chunks(b'data: {"a": 1}\n\n'), cancel)) == []


# =============================================================================
# Tool-Call Accumulator
# =============================================================================


def test_accumulator_emits_once_arguments_parse() -> None:
    acc = ToolCallAccumulator()
    acc.start(1, "toolu_1", "get_weather")
    assert acc.append(1, '{"city": ') is None
    assert acc.append(1, '"Par') is None
    part = acc.append(1, 'is"}')
    assert part == ToolCallPart(call_id="toolu_1", name="get_weather", input={"city": "Paris"})
    assert 1 not in acc
    assert acc.stop(1) is None


@given(
    args=st.dictionaries(
        st.text(min_size=1, max_size=5),
        st.one_of(st.integers(), st.text(max_size=5), st.booleans()),
        min_size=1,
        max_size=4,
    ),
    n_fragments=st.integers(min_value=1, max_value=12),
)
@settings(max_examples=10, deadline=None, derandomize=True)
def test_fragmented_arguments_yield_exactly_one_complete_call(
    args: dict, n_fragments: int
) -> None:
    raw = json.dumps(args)
    size = max(1, len(raw) // n_fragments)
    fragments = [raw[i : i + size] for i in range(0, len(raw), size)]

    acc = ToolCallAccumulator()
    acc.start(0, "call_x", "fn")
    emitted = [p for p in (acc.append(0, f) for f in fragments) if p is not None]
    emitted.extend(acc.finish())

    assert len(emitted) == 1
    assert emitted[0].input == args


def test_stop_falls_back_to_empty_object_on_invalid_json() -> None:
    acc = ToolCallAccumulator()
    acc.start(0, "c1", "broken")
    acc.append(0, '{"a": ')
    part = acc.stop(0)
    assert part is not None
    assert part.input == {}


def test_stop_with_no_fragments_emits_empty_input() -> None:
    acc = ToolCallAccumulator()
    acc.start(2, "c2", "noargs")
    assert acc.stop(2) == ToolCallPart(call_id="c2", name="noargs", input={})


def test_update_merges_id_and_name_from_first_delta_only() -> None:
    acc = ToolCallAccumulator()
    assert acc.update(0, call_id="call_1", name="search", fragment='{"q"') is None
    part = acc.update(0, fragment=': "x"}')
    assert part == ToolCallPart(call_id="call_1", name="search", input={"q": "x"})
    # Trailing fragments for an emitted index are ignored.
    assert acc.update(0, fragment="}") is None
    assert acc.finish() == []


def test_update_generates_call_id_when_backend_omits_it() -> None:
    acc = ToolCallAccumulator()
    acc.update(0, name="fn")
    [part] = acc.finish()
    assert part.call_id.startswith("call_")
    assert part.name == "fn"


def test_finish_flushes_open_entries_in_index_order() -> None:
    acc = ToolCallAccumulator()
    acc.start(3, "b", "second")
    acc.start(1, "a", "first")
    acc.append(3, '{"x": 1')
    parts = acc.finish()
    assert [p.call_id for p in parts] == ["a", "b"]
    assert len(acc) == 0


def test_context_manager_clears_state_on_exit() -> None:
    with ToolCallAccumulator() as acc:
        acc.start(0, "c", "n")
    assert len(acc) == 0
