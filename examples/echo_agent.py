#!/usr/bin/env python
"""Echo agent for trying out and testing agent sessions.

Prompts it understands:
    write <path> <text>   asks permission, then writes <text> to <path>
    wait                  runs until the turn is cancelled
    burst <n>             streams n numbered chunks as fast as it can
    anything else         echoed back word by word
"""

import asyncio
from uuid import uuid4

from acp import (
    Agent,
    InitializeResponse,
    NewSessionResponse,
    PromptResponse,
    run_agent,
    start_tool_call,
    text_block,
    tool_content,
    update_agent_message,
    update_tool_call,
)
from acp.helpers import tool_diff_content
from acp.interfaces import Client
from acp.schema import (
    AllowedOutcome,
    AudioContentBlock,
    ClientCapabilities,
    EmbeddedResourceContentBlock,
    HttpMcpServer,
    ImageContentBlock,
    Implementation,
    McpServerStdio,
    PermissionOption,
    ResourceContentBlock,
    SseMcpServer,
    TextContentBlock,
    ToolCallUpdate,
)


class EchoAgent(Agent):
    """Agent that echoes back user messages."""

    _conn: Client

    def __init__(self) -> None:
        self._cancelled: dict[str, asyncio.Event] = {}

    def on_connect(self, conn: Client) -> None:
        self._conn = conn

    async def initialize(
        self,
        protocol_version: int,
        client_capabilities: ClientCapabilities | None = None,
        client_info: Implementation | None = None,
        **kwargs: object,
    ) -> InitializeResponse:
        return InitializeResponse(
            protocol_version=protocol_version,
            agent_info=Implementation(name="echo-agent", title="Echo Agent", version="0.1.0"),
        )

    async def new_session(
        self,
        cwd: str,
        mcp_servers: list[HttpMcpServer | SseMcpServer | McpServerStdio],
        **kwargs: object,
    ) -> NewSessionResponse:
        session_id = uuid4().hex
        self._cancelled[session_id] = asyncio.Event()
        return NewSessionResponse(session_id=session_id)

    async def cancel(self, session_id: str, **kwargs: object) -> None:
        if session_id in self._cancelled:
            self._cancelled[session_id].set()

    async def prompt(
        self,
        prompt: list[
            TextContentBlock
            | ImageContentBlock
            | AudioContentBlock
            | ResourceContentBlock
            | EmbeddedResourceContentBlock
        ],
        session_id: str,
        **kwargs: object,
    ) -> PromptResponse:
        text = getattr(prompt[0], "text", "") if prompt else ""
        cancelled = self._cancelled.setdefault(session_id, asyncio.Event())
        cancelled.clear()

        if text == "wait":
            await cancelled.wait()
            return PromptResponse(stop_reason="cancelled")

        if text.startswith("burst "):
            for i in range(int(text.split()[1])):
                await self._say(session_id, f"{i},")
            return PromptResponse(stop_reason="end_turn")

        if text.startswith("write "):
            _, path, content = text.split(" ", 2)
            await self._write(session_id, path, content)
            return PromptResponse(stop_reason="end_turn")

        # Stream response word by word
        for word in f"You said: {text}".split():
            await self._say(session_id, word + " ")
            await asyncio.sleep(0.01)
        return PromptResponse(stop_reason="end_turn")

    async def _say(self, session_id: str, text: str) -> None:
        await self._conn.session_update(
            session_id=session_id, update=update_agent_message(text_block(text))
        )

    async def _write(self, session_id: str, path: str, content: str) -> None:
        tool_call_id = f"call_{uuid4().hex[:8]}"
        await self._conn.session_update(
            session_id=session_id,
            update=start_tool_call(
                tool_call_id,
                title=f"Write {path}",
                kind="edit",
                status="pending",
                raw_input={"path": path, "content": content},
            ),
        )

        response = await self._conn.request_permission(
            options=[
                PermissionOption(option_id="allow", name="Allow", kind="allow_once"),
                PermissionOption(option_id="reject", name="Reject", kind="reject_once"),
            ],
            session_id=session_id,
            tool_call=ToolCallUpdate(tool_call_id=tool_call_id, title=f"Write {path}", kind="edit"),
        )
        outcome = response.outcome
        if not isinstance(outcome, AllowedOutcome) or outcome.option_id != "allow":
            await self._conn.session_update(
                session_id=session_id,
                update=update_tool_call(
                    tool_call_id,
                    status="failed",
                    content=[tool_content(text_block("Permission denied"))],
                ),
            )
            await self._say(session_id, "Okay, I left it alone.")
            return

        await self._conn.write_text_file(content=content, path=path, session_id=session_id)
        await self._conn.session_update(
            session_id=session_id,
            update=update_tool_call(
                tool_call_id,
                status="completed",
                content=[tool_diff_content(path, content)],
            ),
        )
        await self._say(session_id, f"Wrote {path}.")


async def main() -> None:
    await run_agent(EchoAgent())


if __name__ == "__main__":
    asyncio.run(main())
