"""Start an agent session in one call, reusing remembered auth choices.

Usage:
    session = await start_agent_session("claude", "claude-code-acp", cwd=project_dir)
    if session.needs_authentication:
        method = pick(session.auth_methods)
        await authenticate_and_create(session, method.id)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from .errors import AuthenticationError, ProtocolError, SessionError
from .preferences import AuthPreferenceStore, get_auth_preferences
from .session import AgentSession, SessionState
from .settings import Settings
from .transport import parse_agent_command
from .types import MCPServerConfig, SessionId

log = logging.getLogger(__name__)


async def start_agent_session(
    agent_name: str,
    command: str,
    cwd: str | Path | None = None,
    *,
    args: Sequence[str] | None = None,
    env: Mapping[str, str] | None = None,
    mcp_servers: Sequence[MCPServerConfig] = (),
    settings: Settings | None = None,
    preferences: AuthPreferenceStore | None = None,
) -> AgentSession:
    """Spawn, initialize and open a session with an agent.

    Args:
        agent_name: Key for remembered auth preferences
        command: Executable, or a full command line when ``args`` is None
        cwd: Working directory for the agent session
        mcp_servers: MCP servers handed to the agent on session creation

    Returns:
        A ``READY`` session with a session id, or one left in
        ``AUTH_REQUIRED`` when every remembered or implicit way in failed.

    Raises:
        SessionError: if the agent cannot be started or initialized, or
            refuses a session after a remembered auth method worked. The
            session is closed before the error propagates.
    """
    if args is None:
        executable, spawn_args = parse_agent_command(command)
    else:
        executable, spawn_args = command, list(args)

    session = AgentSession(agent_name, cwd, settings=settings)
    prefs = preferences or get_auth_preferences()
    try:
        await session.launch(executable, spawn_args, env)
        await session.initialize()
        if session.state is SessionState.READY:
            await session.create_session(mcp_servers)
            return session
    except SessionError:
        await session.close()
        raise

    await _resolve_authentication(session, prefs, mcp_servers)
    return session


async def _resolve_authentication(
    session: AgentSession,
    prefs: AuthPreferenceStore,
    mcp_servers: Sequence[MCPServerConfig],
) -> None:
    name = session.agent_name
    log.info(f"[{name}] Agent advertises auth methods: {[m.id for m in session.auth_methods]}")

    if prefs.should_skip_auth(name):
        log.info(f"[{name}] Skipping auth (previously succeeded without explicit auth)")
        try:
            await session.create_session_without_auth(mcp_servers)
            return
        except ProtocolError as e:
            # Outside login may have expired
            log.info(f"[{name}] Session failed despite skip preference: {e}")
            prefs.clear_auth_preference(name)
    else:
        saved_method = prefs.get_auth_preference(name)
        if saved_method is not None:
            log.info(f"[{name}] Trying saved auth method: {saved_method}")
            try:
                await session.authenticate(saved_method)
            except AuthenticationError as e:
                log.error(f"[{name}] Saved auth method {saved_method!r} failed: {e}")
                prefs.clear_auth_preference(name)
            else:
                try:
                    await session.create_session(mcp_servers)
                except SessionError:
                    # Authenticated fine, so the remembered method stays
                    await session.close()
                    raise
                return
        else:
            log.info(f"[{name}] No saved auth preference, trying session without auth first")
            try:
                await session.create_session_without_auth(mcp_servers)
                prefs.save_skip_auth(name)
                return
            except ProtocolError as e:
                log.info(f"[{name}] Session without auth failed: {e}")

    log.info(f"[{name}] Authentication required, state={session.state.value}")


async def authenticate_and_create(
    session: AgentSession,
    method_id: str,
    mcp_servers: Sequence[MCPServerConfig] = (),
    preferences: AuthPreferenceStore | None = None,
) -> SessionId:
    """Authenticate with the chosen method, open a session and remember the choice."""
    await session.authenticate(method_id)
    session_id = await session.create_session(mcp_servers)
    (preferences or get_auth_preferences()).save_auth_preference(session.agent_name, method_id)
    return session_id
