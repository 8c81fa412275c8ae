#!/usr/bin/env python
"""Talk to an ACP agent from the terminal.

Run with:
    uv run python examples/session_demo.py examples/echo_agent.py
    uv run python examples/session_demo.py "claude-code-acp --verbose"
"""

import asyncio
import shutil
import sys
from pathlib import Path

from acp_sessions import (
    MessageChunk,
    PermissionRequest,
    SessionError,
    ToolCallComplete,
    ToolCallStart,
    TurnEnded,
    authenticate_and_create,
    get_session_registry,
    start_agent_session,
)


async def chat(command: str) -> None:
    registry = get_session_registry()
    session = await start_agent_session(Path(command.split()[0]).stem, command, cwd=Path.cwd())
    if session.needs_authentication:
        print("Authentication required:")
        for i, method in enumerate(session.auth_methods, 1):
            print(f"  {i}. {method.name}")
        choice = int(input("Method: ")) - 1
        await authenticate_and_create(session, session.auth_methods[choice].id)
    registry.put("demo", session, display_hint=command)

    try:
        while True:
            try:
                prompt = input("\n> ")
            except EOFError:
                break
            if not prompt.strip():
                continue
            async for event in session.send_turn(prompt):
                if isinstance(event, MessageChunk):
                    print(event.text, end="", flush=True)
                elif isinstance(event, ToolCallStart):
                    print(f"\n[{event.name}]")
                elif isinstance(event, ToolCallComplete):
                    print(f"[{event.status}] {event.output}")
                elif isinstance(event, PermissionRequest):
                    answer = input(f"\nAllow {event.tool_call.get('title')}? [y/N] ")
                    if answer.lower().startswith("y"):
                        session.permissions.allow()
                    else:
                        session.permissions.deny()
                elif isinstance(event, TurnEnded):
                    print(f"\n({event.stop_reason.value})")
    finally:
        await registry.drain_all()


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: uv run python examples/session_demo.py <agent command>")
        print("\nExamples:")
        print("  uv run python examples/session_demo.py examples/echo_agent.py")
        sys.exit(1)

    command = sys.argv[1]
    program = command.split()[0]
    # Check if it's a file path or a command in PATH
    if not Path(program).exists() and not shutil.which(program):
        print(f"Error: Agent not found: {program}")
        print("Provide either a path to an agent script or a command in PATH.")
        sys.exit(1)

    try:
        asyncio.run(chat(command))
    except SessionError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
