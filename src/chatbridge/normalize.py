"""Request normalization shared by adapters.

The helpers are generic over the message representation so each adapter can
apply them after converting to its own wire dicts.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from chatbridge.types import CacheMarkerPart, Message, TextPart

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

M = TypeVar("M")

PLACEHOLDER_USER_TEXT = "..."
CACHE_PLACEHOLDER_TEXT = " "
EPHEMERAL_CACHE_CONTROL: dict[str, str] = {"type": "ephemeral"}


def is_blank(part: object) -> bool:
    """Empty or whitespace-only text parts are rejected by every backend."""
    return isinstance(part, TextPart) and not part.text.strip()


def split_system(messages: Iterable[Message]) -> tuple[str | None, list[Message]]:
    """Separate system text from the conversation.

    System messages anywhere in the sequence are collected and joined with
    blank lines; the relative order of the rest is preserved.
    """
    system: list[str] = []
    rest: list[Message] = []
    for message in messages:
        if message.role == "system":
            text = "".join(p.text for p in message.content if isinstance(p, TextPart))
            if text.strip():
                system.append(text)
        else:
            rest.append(message)
    return ("\n\n".join(system) if system else None), rest


def system_has_cache_marker(messages: Iterable[Message]) -> bool:
    return any(
        isinstance(p, CacheMarkerPart)
        for m in messages
        if m.role == "system"
        for p in m.content
    )


def merge_alternating(
    messages: Iterable[M],
    role_of: Callable[[M], str],
    merge: Callable[[M, M], M],
) -> list[M]:
    """Merge runs of consecutive same-role messages with *merge*."""
    out: list[M] = []
    for message in messages:
        if out and role_of(out[-1]) == role_of(message):
            out[-1] = merge(out[-1], message)
        else:
            out.append(message)
    return out


def ensure_user_first(
    messages: list[M],
    role_of: Callable[[M], str],
    make_placeholder: Callable[[], M],
) -> list[M]:
    """Prepend a placeholder user message when the first one is not ``user``."""
    if messages and role_of(messages[0]) != "user":
        return [make_placeholder(), *messages]
    return messages


def normalize_messages(messages: Sequence[Message]) -> list[Message]:
    """Canonical-level normalization: drop system, merge roles, user first.

    Blank text parts are dropped and messages left empty are removed before
    merging, so the result strictly alternates.
    """
    _, rest = split_system(messages)
    cleaned = [
        Message(m.role, tuple(p for p in m.content if not is_blank(p))) for m in rest
    ]
    merged = merge_alternating(
        (m for m in cleaned if m.content),
        role_of=lambda m: m.role,
        merge=lambda a, b: Message(a.role, a.content + b.content),
    )
    return ensure_user_first(
        merged,
        role_of=lambda m: m.role,
        make_placeholder=lambda: Message.user(PLACEHOLDER_USER_TEXT),
    )


def attach_cache_marker(
    blocks: list[dict[str, Any]],
    supports: Callable[[dict[str, Any]], bool],
) -> None:
    """Mark the last block as a cache breakpoint, in place.

    When there is no previous block or it cannot carry ``cache_control``, a
    single-space text block carrying the marker is appended instead.
    """
    if blocks and supports(blocks[-1]):
        blocks[-1]["cache_control"] = dict(EPHEMERAL_CACHE_CONTROL)
        return
    blocks.append(
        {
            "type": "text",
            "text": CACHE_PLACEHOLDER_TEXT,
            "cache_control": dict(EPHEMERAL_CACHE_CONTROL),
        }
    )
