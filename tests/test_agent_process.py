"""End-to-end tests against the example echo agent in a real subprocess."""

import asyncio
from pathlib import Path
from typing import Any

import pytest

from acp_sessions import (
    AgentSession,
    MessageChunk,
    PermissionRequest,
    SessionState,
    Settings,
    StopReason,
    ToolCallComplete,
    TurnEnded,
)
from acp_sessions.transport import parse_agent_command

ECHO_AGENT = Path(__file__).parent.parent / "examples" / "echo_agent.py"


async def launch(tmp_path: Path, **settings: Any) -> AgentSession:
    session = AgentSession("echo", tmp_path, settings=Settings(cancel_timeout=5.0, **settings))
    await session.launch(str(ECHO_AGENT))
    await session.initialize()
    await session.create_session()
    return session


def test_parse_agent_command() -> None:
    assert parse_agent_command("claude-code-acp --model 'big one'") == (
        "claude-code-acp",
        ["--model", "big one"],
    )
    with pytest.raises(ValueError):
        parse_agent_command("   ")


class TestEchoAgent:
    """Tests for a full session over stdio."""

    @pytest.mark.asyncio
    async def test_echo_turn(self, tmp_path: Path) -> None:
        session = await launch(tmp_path)
        try:
            assert session.agent_info is not None
            assert session.agent_info.display_name == "Echo Agent"

            events = await session.send_turn("hello there").collect()

            text = "".join(e.text for e in events if isinstance(e, MessageChunk))
            assert text.strip() == "You said: hello there"
            assert events[-1] == TurnEnded(StopReason.END_TURN)
        finally:
            await session.close()
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_permission_and_file_write(self, tmp_path: Path) -> None:
        session = await launch(tmp_path)
        try:
            events = []
            async for event in session.send_turn("write notes/todo.txt buy milk"):
                events.append(event)
                if isinstance(event, PermissionRequest):
                    assert session.permissions.allow()

            assert (tmp_path / "notes" / "todo.txt").read_text() == "buy milk"
            completions = [e for e in events if isinstance(e, ToolCallComplete)]
            assert completions[0].status == "completed"
            assert completions[0].diffs[0].path == "notes/todo.txt"
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_denied_write(self, tmp_path: Path) -> None:
        session = await launch(tmp_path)
        try:
            async for event in session.send_turn("write secret.txt nope"):
                if isinstance(event, PermissionRequest):
                    assert session.permissions.deny()

            assert not (tmp_path / "secret.txt").exists()
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_cancel(self, tmp_path: Path) -> None:
        session = await launch(tmp_path)
        try:
            turn = session.send_turn("wait")
            await asyncio.sleep(0.2)
            assert await session.cancel() is StopReason.CANCELLED
            assert await turn.wait() is StopReason.CANCELLED
            assert session.state is SessionState.READY
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_stalled_reader_gets_every_chunk_in_order(self, tmp_path: Path) -> None:
        """A reader that falls behind slows the turn down but sees every chunk."""
        session = await launch(tmp_path, event_queue_size=2)
        stray: list[Any] = []
        session.event_received.connect(lambda event: stray.append(event))
        try:
            turn = session.send_turn("burst 300")
            await asyncio.sleep(0.5)

            events = []
            async for event in turn:
                events.append(event)
                await asyncio.sleep(0)

            chunks = [e.text for e in events if isinstance(e, MessageChunk)]
            assert chunks == [f"{i}," for i in range(300)]
            assert events[-1] == TurnEnded(StopReason.END_TURN)
            assert stray == []
        finally:
            await session.close()
