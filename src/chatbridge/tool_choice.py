"""Tool-choice resolution, evaluated once per request after tools are final."""

from __future__ import annotations

from dataclasses import dataclass
import enum
import logging
from typing import TYPE_CHECKING

from chatbridge.errors import RequestValidationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from chatbridge.types import ToolMode

log = logging.getLogger(__name__)


class ToolChoiceMode(enum.Enum):
    AUTO = "auto"
    NONE = "none"
    ANY = "any"


AUTO = ToolChoiceMode.AUTO
NONE = ToolChoiceMode.NONE
ANY = ToolChoiceMode.ANY


@dataclass(frozen=True)
class Forced:
    """Force a call to one named tool."""

    name: str


ToolChoice = ToolChoiceMode | Forced | None


def resolve_tool_choice(
    mode: ToolMode,
    tool_names: Sequence[str],
    *,
    thinking_enabled: bool = False,
) -> ToolChoice:
    """Map the caller's tool mode onto a backend-neutral choice.

    ``None`` means "send nothing and let the backend default apply".
    ``NONE`` forbids tool calls while keeping the tool definitions.
    """
    if thinking_enabled:
        # Extended thinking only accepts auto/none; forcing a tool is rejected.
        if mode == "required":
            log.debug(
                "tool_mode='required' downgraded to 'auto' because thinking is "
                "enabled; this depends on current upstream behavior"
            )
            return AUTO
        return NONE if mode == "none" else None

    if mode == "none":
        return NONE
    if mode != "required":
        return None
    if not tool_names:
        raise RequestValidationError(
            "tool_mode='required' needs at least one tool",
            hint="Pass tools in ChatOptions or use tool_mode='auto'.",
        )
    if len(tool_names) == 1:
        return Forced(tool_names[0])
    return ANY
