"""Timeline of a conversation: messages, tool calls, tool call groups and turn summaries.

Every item has two identities. ``stable_id`` never changes once the item
exists and is what positions are indexed by. ``render_id`` is derived from
the content and changes whenever a streaming update alters the item, so a
consumer can tell that the same logical item needs redrawing.
"""

from __future__ import annotations

import hashlib
import logging
import time
import uuid
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Union

from .events import (
    FileDiff,
    MessageChunk,
    PlanChunk,
    StreamEvent,
    ThoughtChunk,
    ToolCallComplete,
    ToolCallProgress,
    ToolCallStart,
    TurnEnded,
)
from .types import StopReason

# JSON type for tool call arguments
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]

log = logging.getLogger(__name__)

USER = "user"
AGENT = "agent"
SYSTEM = "system"


def format_duration(seconds: float) -> str:
    if seconds < 1:
        return "<1s"
    if seconds < 60:
        return f"{int(seconds)}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


@dataclass
class MessageItem:
    id: str
    role: str
    content: str
    timestamp: float
    is_complete: bool = True
    seq: int = field(default=0, compare=False, repr=False)

    @property
    def stable_id(self) -> str:
        return self.id

    @property
    def render_id(self) -> str:
        return f"{self.id}-{len(self.content)}"


@dataclass
class ToolCall:
    id: str
    title: str
    status: str
    timestamp: float
    kind: str | None = None
    arguments: dict[str, JSON] = field(default_factory=dict)
    locations: list[str] = field(default_factory=list)
    diffs: list[FileDiff] = field(default_factory=list)
    output: str = ""
    seq: int = field(default=0, compare=False, repr=False)

    @property
    def stable_id(self) -> str:
        return self.id

    @property
    def render_id(self) -> str:
        return f"{self.id}-{self.status}"

    @property
    def is_finished(self) -> bool:
        return self.status in ("completed", "failed")

    def file_path(self) -> str | None:
        """Path of the file an edit call touched, if it can be told."""
        if self.locations:
            return self.locations[0]
        if self.diffs:
            return self.diffs[0].path
        if self.title and "/" in self.title:
            return self.title
        return None


@dataclass
class FileChangeSummary:
    path: str
    is_new: bool
    lines_added: int = 0
    lines_removed: int = 0

    @property
    def id(self) -> str:
        return self.path

    @property
    def filename(self) -> str:
        return PurePath(self.path).name

    @property
    def directory(self) -> str:
        parent = str(PurePath(self.path).parent)
        return "" if parent == "." else parent


def summarize_file_changes(tool_calls: Iterable[ToolCall]) -> list[FileChangeSummary]:
    """Approximate per-file line counts from the diffs of edit tool calls."""
    changes: dict[str, FileChangeSummary] = {}
    for call in tool_calls:
        if call.kind != "edit":
            continue
        path = call.file_path()
        if path is None:
            continue

        added = removed = 0
        is_new = False
        for diff in call.diffs:
            is_new = diff.is_new_file
            new_lines = len(diff.new_text.split("\n"))
            if is_new:
                added += new_lines
                continue
            old_lines = len((diff.old_text or "").split("\n"))
            if new_lines > old_lines:
                added += new_lines - old_lines
            else:
                removed += old_lines - new_lines

        existing = changes.get(path)
        if existing is None:
            changes[path] = FileChangeSummary(path, is_new, added, removed)
        else:
            existing.lines_added += added
            existing.lines_removed += removed
    return sorted(changes.values(), key=lambda c: c.path)


@dataclass
class ToolCallGroup:
    """Tool calls made between two agent messages."""

    tool_calls: list[ToolCall]
    message_id: str | None = None
    is_completed_turn: bool = False

    def __post_init__(self) -> None:
        self.tool_calls = sorted(self.tool_calls, key=lambda c: (c.timestamp, c.seq))

    @property
    def id(self) -> str:
        key = "-".join(sorted(call.id for call in self.tool_calls))
        return hashlib.sha1(key.encode()).hexdigest()[:12]

    @property
    def timestamp(self) -> float:
        return self.tool_calls[0].timestamp if self.tool_calls else 0.0

    @property
    def has_failed(self) -> bool:
        return any(call.status == "failed" for call in self.tool_calls)

    @property
    def is_in_progress(self) -> bool:
        return any(call.status in ("pending", "in_progress") for call in self.tool_calls)

    @property
    def is_successful(self) -> bool:
        return all(call.status == "completed" for call in self.tool_calls)

    @property
    def tool_kinds(self) -> set[str]:
        return {call.kind for call in self.tool_calls if call.kind}

    @property
    def summary_text(self) -> str:
        return f"{len(self.tool_calls)} tool calls"

    @property
    def file_changes(self) -> list[FileChangeSummary]:
        return summarize_file_changes(self.tool_calls)

    @property
    def turn_duration(self) -> float | None:
        finished = [call.timestamp for call in self.tool_calls if call.is_finished]
        if not self.tool_calls or not finished:
            return None
        return max(finished) - min(call.timestamp for call in self.tool_calls)

    @property
    def formatted_duration(self) -> str | None:
        duration = self.turn_duration
        return None if duration is None else format_duration(duration)

    @property
    def stable_id(self) -> str:
        return f"group-{self.id}"

    @property
    def render_id(self) -> str:
        status = "failed" if self.has_failed else ("progress" if self.is_in_progress else "done")
        return f"group-{self.id}-{len(self.tool_calls)}-{status}"


@dataclass
class TurnSummary:
    """Shown once a turn that used tools has ended."""

    id: str
    timestamp: float
    duration: float
    tool_call_count: int
    file_changes: list[FileChangeSummary]

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.duration)

    @property
    def stable_id(self) -> str:
        return f"summary-{self.id}"

    @property
    def render_id(self) -> str:
        return f"summary-{self.id}"

    @classmethod
    def from_tool_calls(cls, tool_calls: list[ToolCall]) -> TurnSummary:
        timestamps = [call.timestamp for call in tool_calls]
        start, end = min(timestamps), max(timestamps)
        first = min(tool_calls, key=lambda c: (c.timestamp, c.seq))
        return cls(
            id=first.id,
            timestamp=end,
            duration=end - start,
            tool_call_count=len(tool_calls),
            file_changes=summarize_file_changes(tool_calls),
        )


TimelineItem = Union[MessageItem, ToolCall, ToolCallGroup, TurnSummary]


def build_timeline(
    messages: Iterable[MessageItem], tool_calls: Iterable[ToolCall], is_streaming: bool
) -> list[TimelineItem]:
    """Merge messages and tool calls into display order.

    Tool calls are grouped whenever a message follows them. A user message
    ends the previous turn, and so does the end of streaming; an ended turn
    that used tools gets a ``TurnSummary``. System messages are held back
    until the summary of the turn they arrived in.
    """
    entries: list[MessageItem | ToolCall] = [*messages, *tool_calls]
    entries.sort(key=lambda e: (e.timestamp, e.seq))

    items: list[TimelineItem] = []
    buffer: list[ToolCall] = []
    turn_calls: list[ToolCall] = []
    pending_system: list[MessageItem] = []
    last_agent_message: str | None = None

    def flush_group(completed: bool) -> None:
        items.append(ToolCallGroup(list(buffer), last_agent_message, completed))
        turn_calls.extend(buffer)
        buffer.clear()

    def end_turn() -> None:
        if turn_calls:
            items.append(TurnSummary.from_tool_calls(turn_calls))
            turn_calls.clear()
        items.extend(pending_system)
        pending_system.clear()

    for entry in entries:
        if isinstance(entry, ToolCall):
            buffer.append(entry)
            continue
        if entry.role == SYSTEM:
            pending_system.append(entry)
            continue
        if entry.role == USER:
            if buffer:
                flush_group(completed=False)
            end_turn()
        elif entry.role == AGENT and buffer:
            flush_group(completed=True)
        items.append(entry)
        if entry.role == AGENT:
            last_agent_message = entry.id

    if buffer:
        if is_streaming:
            turn_calls.extend(buffer)
            items.extend(buffer)
            buffer.clear()
        else:
            flush_group(completed=True)
            end_turn()
    elif not is_streaming and turn_calls:
        end_turn()

    items.extend(pending_system)
    return items


class Timeline:
    """Ordered timeline items with O(1) lookup by stable id."""

    def __init__(self, items: Iterable[TimelineItem] = ()):
        self._items: list[TimelineItem] = []
        self._index: dict[str, int] = {}
        self.replace(items)

    def replace(self, items: Iterable[TimelineItem]) -> None:
        self._items = list(items)
        self._reindex()

    def _reindex(self) -> None:
        self._index = {item.stable_id: i for i, item in enumerate(self._items)}

    def index_of(self, stable_id: str) -> int | None:
        return self._index.get(stable_id)

    def get(self, stable_id: str) -> TimelineItem | None:
        i = self._index.get(stable_id)
        return None if i is None else self._items[i]

    def upsert(self, item: TimelineItem) -> int:
        """Update an item in place, or append it. Returns its position."""
        i = self._index.get(item.stable_id)
        if i is None:
            self._items.append(item)
            i = len(self._items) - 1
            self._index[item.stable_id] = i
        else:
            self._items[i] = item
        return i

    def remove(self, stable_id: str) -> bool:
        i = self._index.get(stable_id)
        if i is None:
            return False
        del self._items[i]
        self._reindex()
        return True

    def render_ids(self) -> list[str]:
        return [item.render_id for item in self._items]

    def __iter__(self) -> Iterator[TimelineItem]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, i: int) -> TimelineItem:
        return self._items[i]


class Conversation:
    """Folds stream events into messages and tool calls.

    ``clock`` returns the timestamp of new items.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._seq = 0
        self.messages: list[MessageItem] = []
        self.tool_calls: dict[str, ToolCall] = {}
        self.thoughts: list[str] = []
        self.plan: list[dict[str, JSON]] = []
        self.is_streaming = False
        self.last_stop_reason: StopReason | None = None
        self._open_message: MessageItem | None = None

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _new_message(self, role: str, content: str, is_complete: bool = True) -> MessageItem:
        msg = MessageItem(
            id=uuid.uuid4().hex,
            role=role,
            content=content,
            timestamp=self._clock(),
            is_complete=is_complete,
            seq=self._next_seq(),
        )
        self.messages.append(msg)
        return msg

    def add_user_message(self, text: str) -> MessageItem:
        """Record what the user sent and start streaming the reply."""
        self._close_message()
        self.is_streaming = True
        return self._new_message(USER, text)

    def add_system_message(self, text: str) -> MessageItem:
        return self._new_message(SYSTEM, text)

    def _close_message(self) -> None:
        if self._open_message is not None:
            self._open_message.is_complete = True
            self._open_message = None

    def apply(self, event: StreamEvent) -> None:
        if isinstance(event, MessageChunk):
            if self._open_message is None:
                self._open_message = self._new_message(AGENT, "", is_complete=False)
            self._open_message.content += event.text
        elif isinstance(event, ThoughtChunk):
            self.thoughts.append(event.text)
        elif isinstance(event, PlanChunk):
            self.plan = list(event.entries)
        elif isinstance(event, ToolCallStart):
            self._close_message()
            self._start_tool(event)
        elif isinstance(event, ToolCallProgress):
            self._update_tool(event)
        elif isinstance(event, ToolCallComplete):
            self._complete_tool(event)
        elif isinstance(event, TurnEnded):
            self._end_turn(event.stop_reason)

    def apply_all(self, events: Iterable[StreamEvent]) -> None:
        for event in events:
            self.apply(event)

    def _start_tool(self, event: ToolCallStart) -> None:
        call = self.tool_calls.get(event.id)
        if call is not None:
            call.status = event.status
            return
        self.tool_calls[event.id] = ToolCall(
            id=event.id,
            title=event.name,
            status=event.status,
            timestamp=self._clock(),
            kind=event.kind,
            arguments=dict(event.arguments),
            locations=list(event.locations),
            diffs=list(event.diffs),
            seq=self._next_seq(),
        )

    def _update_tool(self, event: ToolCallProgress) -> None:
        call = self.tool_calls.get(event.id)
        if call is None:
            log.warning(f"⚠️ Progress for unknown tool call {event.id}")
            return
        call.status = event.status
        if event.title:
            call.title = event.title
        if event.locations:
            call.locations = list(event.locations)
        if event.diffs:
            call.diffs = list(event.diffs)

    def _complete_tool(self, event: ToolCallComplete) -> None:
        call = self.tool_calls.get(event.id)
        if call is None:
            log.warning(f"⚠️ Completion for unknown tool call {event.id}")
            return
        call.status = event.status
        call.output = event.output
        if event.diffs:
            call.diffs = list(event.diffs)

    def _end_turn(self, stop_reason: StopReason) -> None:
        self._close_message()
        self.is_streaming = False
        self.last_stop_reason = stop_reason
        if stop_reason is StopReason.CANCELLED:
            self.add_system_message("Turn cancelled")
        elif stop_reason is StopReason.ABORTED:
            self.add_system_message("Agent process exited unexpectedly")

    def timeline(self, is_streaming: bool | None = None) -> Timeline:
        streaming = self.is_streaming if is_streaming is None else is_streaming
        return Timeline(build_timeline(self.messages, self.tool_calls.values(), streaming))
