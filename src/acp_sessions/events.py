"""Event types for streaming agent turns.

These events are yielded by a running turn to represent the chronological
stream of what the agent is doing, in the order the agent sent them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from .types import StopReason

# JSON type for tool call arguments and outputs
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]


@dataclass
class FileDiff:
    """A file modification reported by a tool call."""

    path: str
    new_text: str
    old_text: str | None = None

    @property
    def is_new_file(self) -> bool:
        return not self.old_text


@dataclass
class MessageChunk:
    """A chunk of assistant message text."""

    text: str


@dataclass
class ThoughtChunk:
    """A chunk of thinking/reasoning text."""

    text: str


@dataclass
class PlanChunk:
    """The agent's current plan, replacing any previous one."""

    entries: list[dict[str, JSON]] = field(default_factory=list)


@dataclass
class ToolCallStart:
    """Tool call is starting."""

    id: str
    name: str
    arguments: dict[str, JSON]
    kind: str | None = None
    status: str = "pending"
    locations: list[str] = field(default_factory=list)
    diffs: list[FileDiff] = field(default_factory=list)


@dataclass
class ToolCallProgress:
    """Tool call progress update."""

    id: str
    status: str
    title: str | None = None
    locations: list[str] = field(default_factory=list)
    diffs: list[FileDiff] = field(default_factory=list)


@dataclass
class ToolCallComplete:
    """Tool call finished, successfully or not."""

    id: str
    output: str
    status: str = "completed"
    diffs: list[FileDiff] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == "failed"


@dataclass
class PermissionRequest:
    """Request for user permission to execute a tool."""

    request_id: str
    session_id: str
    tool_call: dict[str, JSON]
    options: list[dict[str, JSON]]


@dataclass
class ModeChanged:
    """The agent switched the session to another mode."""

    mode_id: str


@dataclass
class CommandsAvailable:
    """The agent advertised its slash commands."""

    commands: list[dict[str, JSON]]


@dataclass
class TurnEnded:
    """Last event of every turn."""

    stop_reason: StopReason


# Union type for all possible events
StreamEvent = (
    MessageChunk
    | ThoughtChunk
    | PlanChunk
    | ToolCallStart
    | ToolCallProgress
    | ToolCallComplete
    | PermissionRequest
    | ModeChanged
    | CommandsAvailable
    | TurnEnded
)
