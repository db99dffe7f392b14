"""Reassemble streamed reasoning into replayable thinking parts."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING

from chatbridge.types import (
    THINKING_PART_TYPES,
    RedactedThinkingPart,
    ThinkingPart,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from chatbridge.types import ContentPart

log = logging.getLogger(__name__)


@dataclass
class _Block:
    text: list[str] = field(default_factory=list)
    signature: str = ""


class ThinkingReconstructor:
    """Accumulate thinking text and signature per content-block index.

    A block is emitted once, at ``stop``, and only if it was signed: an
    unsigned block cannot be replayed to the backend, so it is dropped.
    """

    def __init__(self) -> None:
        self._blocks: dict[int, _Block] = {}

    def start(self, index: int, text: str = "", signature: str = "") -> None:
        block = _Block(signature=signature or "")
        if text:
            block.text.append(text)
        self._blocks[index] = block

    def add_text(self, index: int, text: str) -> None:
        block = self._blocks.setdefault(index, _Block())
        block.text.append(text)

    def add_signature(self, index: int, signature: str) -> None:
        block = self._blocks.setdefault(index, _Block())
        block.signature += signature

    def set_signature(self, index: int, signature: str) -> None:
        block = self._blocks.setdefault(index, _Block())
        block.signature = signature

    def stop(self, index: int) -> ThinkingPart | None:
        block = self._blocks.pop(index, None)
        if block is None:
            return None
        if not block.signature:
            log.debug("Dropping unsigned thinking block at index %d", index)
            return None
        return ThinkingPart(text="".join(block.text), signature=block.signature)

    def finish(self) -> list[ThinkingPart]:
        parts = [self.stop(index) for index in sorted(self._blocks)]
        return [p for p in parts if p is not None]

    def clear(self) -> None:
        self._blocks.clear()

    @staticmethod
    def redacted(data: str) -> RedactedThinkingPart:
        """Carry an opaque reasoning blob as-is."""
        return RedactedThinkingPart(data=data)


class FlaggedThinkingReconstructor:
    """Thinking streamed as flagged parts (``thought: true``) in one implicit block.

    The block closes when a non-thinking part arrives or the stream ends.
    """

    def __init__(self) -> None:
        self._inner = ThinkingReconstructor()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def add(self, text: str, signature: str | None = None) -> None:
        if not self._open:
            self._inner.start(0)
            self._open = True
        if text:
            self._inner.add_text(0, text)
        if signature:
            # Each flagged part repeats the full signature; keep the latest.
            self._inner.set_signature(0, signature)

    def close(self) -> ThinkingPart | None:
        if not self._open:
            return None
        self._open = False
        return self._inner.stop(0)

    def clear(self) -> None:
        self._open = False
        self._inner.clear()


def thinking_first(parts: Iterable[ContentPart]) -> list[ContentPart]:
    """Move thinking parts ahead of everything else, keeping relative order."""
    parts = list(parts)
    thinking = [p for p in parts if isinstance(p, THINKING_PART_TYPES)]
    rest = [p for p in parts if not isinstance(p, THINKING_PART_TYPES)]
    return thinking + rest
