"""Request normalization: system split, alternation, placeholder, cache markers."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from chatbridge.normalize import (
    CACHE_PLACEHOLDER_TEXT,
    EPHEMERAL_CACHE_CONTROL,
    PLACEHOLDER_USER_TEXT,
    attach_cache_marker,
    normalize_messages,
    split_system,
    system_has_cache_marker,
)
from chatbridge.types import CacheMarkerPart, Message, TextPart

pytestmark = pytest.mark.unit

_messages = st.lists(
    st.builds(
        lambda role, text: Message(role, (TextPart(text),)),
        st.sampled_from(["system", "user", "assistant"]),
        st.sampled_from(["", "  ", "hello", "world"]),
    ),
    max_size=10,
)


@given(messages=_messages)
@settings(max_examples=10, deadline=None, derandomize=True)
def test_normalized_sequence_alternates_and_starts_with_user(
    messages: list[Message],
) -> None:
    out = normalize_messages(messages)
    roles = [m.role for m in out]

    assert "system" not in roles
    assert all(a != b for a, b in zip(roles, roles[1:]))
    if out:
        assert roles[0] == "user"
    assert all(m.content for m in out)


def test_consecutive_same_role_messages_are_merged_in_order() -> None:
    out = normalize_messages(
        [Message.user("a"), Message.user("b"), Message.assistant("c")]
    )
    assert out == [
        Message("user", (TextPart("a"), TextPart("b"))),
        Message.assistant("c"),
    ]


def test_placeholder_user_message_is_prepended_when_assistant_leads() -> None:
    out = normalize_messages([Message.assistant("I start")])
    assert out[0] == Message.user(PLACEHOLDER_USER_TEXT)
    assert out[1] == Message.assistant("I start")


def test_blank_parts_are_dropped_before_merging() -> None:
    out = normalize_messages(
        [Message.user("q"), Message.assistant("   "), Message.user("again")]
    )
    assert out == [Message("user", (TextPart("q"), TextPart("again")))]


def test_split_system_joins_all_system_text() -> None:
    system, rest = split_system(
        [Message.system("one"), Message.user("hi"), Message.system("two")]
    )
    assert system == "one\n\ntwo"
    assert rest == [Message.user("hi")]


def test_split_system_returns_none_without_system_text() -> None:
    system, _ = split_system([Message.user("hi"), Message.system("   ")])
    assert system is None


def test_system_cache_marker_is_detected() -> None:
    assert system_has_cache_marker([Message.system("s", CacheMarkerPart())])
    assert not system_has_cache_marker([Message.user("s", CacheMarkerPart())])


def test_cache_marker_attaches_to_supported_previous_block() -> None:
    blocks = [{"type": "text", "text": "context"}]
    attach_cache_marker(blocks, lambda b: b["type"] == "text")
    assert blocks == [
        {"type": "text", "text": "context", "cache_control": EPHEMERAL_CACHE_CONTROL}
    ]


def test_cache_marker_falls_back_to_placeholder_block() -> None:
    blocks = [{"type": "thinking", "thinking": "t", "signature": "s"}]
    attach_cache_marker(blocks, lambda b: b["type"] == "text")
    assert blocks[-1] == {
        "type": "text",
        "text": CACHE_PLACEHOLDER_TEXT,
        "cache_control": EPHEMERAL_CACHE_CONTROL,
    }

    empty: list[dict] = []
    attach_cache_marker(empty, lambda b: True)
    assert empty[0]["text"] == CACHE_PLACEHOLDER_TEXT
