"""Thinking reconstruction and ordering."""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from chatbridge.thinking import (
    FlaggedThinkingReconstructor,
    ThinkingReconstructor,
    thinking_first,
)
from chatbridge.types import (
    RedactedThinkingPart,
    TextPart,
    ThinkingPart,
    ToolCallPart,
)

pytestmark = pytest.mark.unit


@given(
    deltas=st.lists(st.text(max_size=10), min_size=1, max_size=6),
    signature=st.text(max_size=6),
)
@settings(max_examples=10, deadline=None, derandomize=True)
def test_signed_blocks_emit_once_and_unsigned_blocks_are_dropped(
    deltas: list[str], signature: str
) -> None:
    recon = ThinkingReconstructor()
    recon.start(0)
    for delta in deltas:
        recon.add_text(0, delta)
    if signature:
        recon.add_signature(0, signature)

    part = recon.stop(0)

    if signature:
        assert part == ThinkingPart(text="".join(deltas), signature=signature)
    else:
        assert part is None
    assert recon.stop(0) is None


def test_start_may_carry_initial_text_and_signature() -> None:
    recon = ThinkingReconstructor()
    recon.start(4, text="Let me ", signature="sig")
    recon.add_text(4, "think.")
    assert recon.stop(4) == ThinkingPart(text="Let me think.", signature="sig")


def test_signature_deltas_concatenate_but_set_signature_replaces() -> None:
    recon = ThinkingReconstructor()
    recon.start(0)
    recon.add_signature(0, "ab")
    recon.add_signature(0, "cd")
    recon.set_signature(1, "zz")
    recon.set_signature(1, "yy")
    assert recon.stop(0).signature == "abcd"
    assert recon.stop(1).signature == "yy"


def test_finish_emits_signed_blocks_in_index_order() -> None:
    recon = ThinkingReconstructor()
    recon.start(2, text="b", signature="s2")
    recon.start(0, text="a", signature="s0")
    recon.start(1, text="unsigned")
    assert [p.text for p in recon.finish()] == ["a", "b"]


def test_redacted_blob_is_carried_verbatim() -> None:
    assert ThinkingReconstructor.redacted("opaque==") == RedactedThinkingPart("opaque==")


def test_flagged_reconstructor_keeps_latest_signature() -> None:
    recon = FlaggedThinkingReconstructor()
    recon.add("Step 1. ", "sig-a")
    recon.add("Step 2.", "sig-b")
    assert recon.is_open
    assert recon.close() == ThinkingPart(text="Step 1. Step 2.", signature="sig-b")
    assert not recon.is_open
    assert recon.close() is None


def test_flagged_reconstructor_drops_unsigned_block() -> None:
    recon = FlaggedThinkingReconstructor()
    recon.add("no signature here")
    assert recon.close() is None


def test_thinking_first_moves_reasoning_ahead_and_keeps_order() -> None:
    call = ToolCallPart(call_id="c", name="n", input={})
    t1 = ThinkingPart(text="one", signature="s")
    t2 = RedactedThinkingPart("blob")
    parts = [TextPart("hi"), call, t1, TextPart("bye"), t2]
    assert thinking_first(parts) == [t1, t2, TextPart("hi"), call, TextPart("bye")]
