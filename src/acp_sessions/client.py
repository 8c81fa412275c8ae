"""ACP client callbacks bound to one agent session.

The agent calls back into the client for streamed session updates, permission
prompts and file access. ``SessionClient`` translates those calls into stream
events and hands them to its ``AgentSession`` in arrival order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import singledispatch
from typing import TYPE_CHECKING, Any, Union

from acp import Client, RequestError
from acp.connection import StreamDirection, StreamEvent as WireEvent
from acp.interfaces import Agent
from acp.schema import (
    AgentMessageChunk,
    AgentPlanUpdate,
    AgentThoughtChunk,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
    PermissionOption,
    ReadTextFileResponse,
    RequestPermissionResponse,
    TextContentBlock,
    ToolCallProgress as ACPToolCallProgress,
    ToolCallStart as ACPToolCallStart,
    ToolCallUpdate,
    UserMessageChunk,
    WriteTextFileResponse,
)

from .events import (
    CommandsAvailable,
    FileDiff,
    MessageChunk,
    ModeChanged,
    PlanChunk,
    StreamEvent,
    ThoughtChunk,
    ToolCallComplete,
    ToolCallProgress,
    ToolCallStart,
)

if TYPE_CHECKING:
    from .session import AgentSession

# JSON type for proper typing of JSON values
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]

log = logging.getLogger(__name__)


# Singledispatch translation of session updates
@singledispatch
def translate_update(update: object) -> list[StreamEvent]:
    """Translate one SDK session update into zero or more stream events."""
    log.warning(f"⚠️  Unhandled update type: {type(update).__name__} - {update}")
    return []


@translate_update.register
def _translate_user_message(update: UserMessageChunk) -> list[StreamEvent]:
    # Echo of our own prompt, replayed by some agents
    log.debug(f"Ignoring UserMessageChunk: {update.content}")
    return []


@translate_update.register
def _translate_agent_message(update: AgentMessageChunk) -> list[StreamEvent]:
    content = update.content
    if isinstance(content, TextContentBlock):
        return [MessageChunk(content.text)]
    log.debug(f"Ignoring non-text message content: {type(content).__name__}")
    return []


@translate_update.register
def _translate_agent_thought(update: AgentThoughtChunk) -> list[StreamEvent]:
    content = update.content
    if isinstance(content, TextContentBlock):
        return [ThoughtChunk(content.text)]
    return []


@translate_update.register
def _translate_agent_plan(update: AgentPlanUpdate) -> list[StreamEvent]:
    entries: list[dict[str, JSON]] = [
        {
            "content": entry.content,
            "status": entry.status,
            "priority": entry.priority,
        }
        for entry in update.entries
    ]
    log.info(f"📋 AgentPlanUpdate received with {len(entries)} entries")
    return [PlanChunk(entries=entries)]


@translate_update.register
def _translate_mode(update: CurrentModeUpdate) -> list[StreamEvent]:
    return [ModeChanged(mode_id=update.current_mode_id)]


@translate_update.register
def _translate_commands(update: AvailableCommandsUpdate) -> list[StreamEvent]:
    commands: list[dict[str, JSON]] = [
        {"name": cmd.name, "description": getattr(cmd, "description", None)}
        for cmd in update.available_commands
    ]
    return [CommandsAvailable(commands=commands)]


@translate_update.register
def _translate_tool_start(update: ACPToolCallStart) -> list[StreamEvent]:
    arguments = _parse_arguments(update.raw_input)
    log.info(f"🔧 Tool {update.title} started ({update.tool_call_id}), args={arguments}")
    start = ToolCallStart(
        id=update.tool_call_id,
        name=update.title or "",
        arguments=arguments,
        kind=update.kind,
        status=update.status or "pending",
        locations=_locations(update.locations),
        diffs=_diffs(update.content),
    )
    events: list[StreamEvent] = [start]
    # Some agents report a tool call that has already finished
    if update.status in ("completed", "failed"):
        events.append(
            ToolCallComplete(
                id=update.tool_call_id,
                output=_output_text(update.content, update.raw_output),
                status=update.status,
            )
        )
    return events


@translate_update.register
def _translate_tool_progress(update: ACPToolCallProgress) -> list[StreamEvent]:
    status = update.status or ""
    if status in ("completed", "failed"):
        return [
            ToolCallComplete(
                id=update.tool_call_id,
                output=_output_text(update.content, update.raw_output),
                status=status,
                diffs=_diffs(update.content),
            )
        ]
    return [
        ToolCallProgress(
            id=update.tool_call_id,
            status=status or "in_progress",
            title=update.title,
            locations=_locations(update.locations),
            diffs=_diffs(update.content),
        )
    ]


def _parse_arguments(raw_input: Any) -> dict[str, JSON]:
    if isinstance(raw_input, dict):
        return raw_input
    if isinstance(raw_input, str):
        try:
            parsed = json.loads(raw_input)
        except (json.JSONDecodeError, ValueError):
            return {"input": raw_input}
        if isinstance(parsed, dict):
            return parsed
        return {"input": raw_input}
    if raw_input is not None:
        return {"value": str(raw_input)}
    return {}


def _locations(locations: Any) -> list[str]:
    return [loc.path for loc in locations or [] if getattr(loc, "path", None)]


def _diffs(content: Any) -> list[FileDiff]:
    diffs = []
    for item in content or []:
        if getattr(item, "type", None) == "diff":
            diffs.append(FileDiff(path=item.path, new_text=item.new_text, old_text=item.old_text))
    return diffs


def _output_text(content: Any, raw_output: Any) -> str:
    parts = []
    for item in content or []:
        block = getattr(item, "content", None)
        if isinstance(block, TextContentBlock):
            parts.append(block.text)
    if parts:
        return "\n".join(parts)
    if raw_output is None:
        return ""
    if isinstance(raw_output, str):
        return raw_output
    return json.dumps(raw_output, default=str)


# Incoming messages whose events must reach the session in wire order
ORDERED_METHODS = frozenset({"session/update", "session/request_permission"})

# How long settle() waits with no handler in flight before giving up
SETTLE_GRACE = 1.0


class DeliveryOrder:
    """Serves numbered deliveries one at a time, lowest number first.

    The SDK runs every incoming message on its own task, so handlers that
    block on a full buffer can resume in any order. Each handler takes a
    number before its first await and waits for all lower numbers to finish.
    """

    def __init__(self) -> None:
        self.issued = 0
        self.served = 0
        self._finished: set[int] = set()
        self._waiters: dict[int, asyncio.Future[None]] = {}

    def take(self) -> int:
        ticket = self.issued
        self.issued += 1
        return ticket

    async def wait_until(self, served: int) -> None:
        """Wait until the first ``served`` numbers have finished."""
        if self.served >= served:
            return
        waiter = self._waiters.get(served)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[served] = waiter
        await asyncio.shield(waiter)

    def release(self, ticket: int) -> None:
        """Mark ``ticket`` finished. Safe to call more than once."""
        if ticket < self.served or ticket in self._finished:
            return
        self._finished.add(ticket)
        while self.served in self._finished:
            self._finished.remove(self.served)
            self.served += 1
            waiter = self._waiters.pop(self.served, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

    @asynccontextmanager
    async def turn_of(self, ticket: int) -> AsyncIterator[None]:
        try:
            await self.wait_until(ticket)
            yield
        finally:
            self.release(ticket)


class SessionClient(Client):
    """Handles ACP client callbacks for one session."""

    def __init__(self, session: AgentSession) -> None:
        self._session = session
        self._conn: Agent | None = None
        self._order = DeliveryOrder()
        self._arrived = 0

    def on_connect(self, conn: Agent) -> None:
        """Called when the connection is established."""
        self._conn = conn

    def observe_stream(self, event: WireEvent) -> None:
        """Count ordered messages as the connection reads them off the wire.

        Runs inside the connection's read loop, so a prompt response can only
        be seen after every update the agent sent before it has been counted.
        """
        if event.direction is not StreamDirection.INCOMING:
            return
        if event.message.get("method") in ORDERED_METHODS:
            self._arrived += 1

    async def settle(self) -> None:
        """Wait until every ordered message read so far has been delivered.

        Gives up when nothing is in flight for ``SETTLE_GRACE`` seconds, which
        means the SDK rejected a message before it reached a handler.
        """
        target = self._arrived
        while self._order.served < target:
            try:
                await asyncio.wait_for(self._order.wait_until(target), timeout=SETTLE_GRACE)
            except asyncio.TimeoutError:
                if self._order.issued == self._order.served:
                    lost = target - self._order.served
                    log.warning(f"⚠️ {lost} updates never reached the client")
                    self._arrived -= lost
                    return

    async def session_update(self, session_id: str, update: Any, **kwargs: JSON) -> None:
        """Translate the update and deliver its events in order."""
        ticket = self._order.take()
        log.debug(f"📨 session_update #{ticket} received: {type(update).__name__} {update}")
        async with self._order.turn_of(ticket):
            for event in translate_update(update):
                await self._session.deliver(session_id, event)

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **kwargs: JSON,
    ) -> RequestPermissionResponse:
        """Ask the user through the session's permission handler.

        The prompt event keeps its place among the updates around it.
        """
        ticket = self._order.take()

        async def notify(event: StreamEvent) -> None:
            async with self._order.turn_of(ticket):
                await self._session.deliver(session_id, event)

        try:
            return await self._session.handle_permission_request(
                session_id, tool_call, options, notify=notify
            )
        except ValueError as e:
            raise RequestError.invalid_params({"error": str(e)}) from e
        finally:
            self._order.release(ticket)

    async def read_text_file(
        self,
        path: str,
        session_id: str,
        limit: int | None = None,
        line: int | None = None,
        **kwargs: JSON,
    ) -> ReadTextFileResponse:
        """Read a text file relative to the session's working directory."""
        if not path:
            raise RequestError.invalid_params({"error": "Missing required parameter: path"})
        try:
            content = self._session.files.read_text_file(path, line=line, limit=limit)
        except (FileNotFoundError, IsADirectoryError, ValueError) as e:
            log.warning(f"Read of {path} rejected: {e}")
            raise RequestError.invalid_params({"error": str(e)}) from e
        except OSError as e:
            log.error(f"Failed to read file {path}: {e}")
            raise RequestError.internal_error({"error": f"Failed to read file: {e}"}) from e
        return ReadTextFileResponse(content=content)

    async def write_text_file(
        self, content: str, path: str, session_id: str, **kwargs: JSON
    ) -> WriteTextFileResponse:
        """Write a text file relative to the session's working directory."""
        if not path:
            raise RequestError.invalid_params({"error": "Missing required parameter: path"})
        try:
            self._session.files.write_text_file(path, content)
        except OSError as e:
            log.error(f"Failed to write file {path}: {e}")
            raise RequestError.internal_error({"error": f"Failed to write file: {e}"}) from e
        return WriteTextFileResponse()

    async def create_terminal(self, command: str, session_id: str, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/create")

    async def terminal_output(self, session_id: str, terminal_id: str, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/output")

    async def release_terminal(self, session_id: str, terminal_id: str, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/release")

    async def wait_for_terminal_exit(self, session_id: str, terminal_id: str, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/wait_for_exit")

    async def kill_terminal(self, session_id: str, terminal_id: str, **kwargs: Any) -> Any:
        raise RequestError.method_not_found("terminal/kill")

    async def ext_method(self, method: str, params: dict[str, JSON]) -> dict[str, JSON]:
        """Handle extension methods."""
        raise RequestError.method_not_found(method)

    async def ext_notification(self, method: str, params: dict[str, JSON]) -> None:
        """Handle extension notifications."""
        return None
