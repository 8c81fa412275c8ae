"""Run many Agent Client Protocol agents side by side.

    from acp_sessions import AgentSession, get_session_registry

    session = AgentSession("echo", cwd=".")
    await session.launch("python", ["echo_agent.py"])
    await session.initialize()
    await session.create_session()
    get_session_registry().put("chat-1", session)

    async for event in session.send_turn("Hello"):
        print(event)

Set ACP_SESSIONS_LOGGING_LEVEL=DEBUG to log to acp_sessions.log.
"""

from .errors import (
    AuthenticationError,
    DecodingError,
    InvalidStateError,
    NoActiveSessionError,
    ProtocolError,
    SessionError,
    TransportError,
    TurnInProgressError,
)
from .events import (
    CommandsAvailable,
    FileDiff,
    MessageChunk,
    ModeChanged,
    PermissionRequest,
    PlanChunk,
    StreamEvent,
    ThoughtChunk,
    ToolCallComplete,
    ToolCallProgress,
    ToolCallStart,
    TurnEnded,
)
from .launcher import authenticate_and_create, start_agent_session
from .permissions import PermissionCoordinator, PermissionHandler, PermissionPrompt
from .preferences import AuthPreferenceStore, get_auth_preferences
from .registry import SessionRegistry, get_session_registry
from .session import AgentSession, SessionState, Turn
from .settings import Settings, configure_logging
from .timeline import Conversation, Timeline, build_timeline
from .types import (
    Attachment,
    AuthMethod,
    HttpServerConfig,
    MCPServerConfig,
    SessionId,
    SseServerConfig,
    StdioServerConfig,
    StopReason,
    decode_mcp_server,
)

configure_logging()

__version__ = "0.1.0"
__all__ = [
    "AgentSession",
    "Attachment",
    "AuthMethod",
    "AuthPreferenceStore",
    "AuthenticationError",
    "CommandsAvailable",
    "Conversation",
    "DecodingError",
    "FileDiff",
    "HttpServerConfig",
    "InvalidStateError",
    "MCPServerConfig",
    "MessageChunk",
    "ModeChanged",
    "NoActiveSessionError",
    "PermissionCoordinator",
    "PermissionHandler",
    "PermissionPrompt",
    "PermissionRequest",
    "PlanChunk",
    "ProtocolError",
    "SessionError",
    "SessionId",
    "SessionRegistry",
    "SessionState",
    "Settings",
    "SseServerConfig",
    "StdioServerConfig",
    "StopReason",
    "StreamEvent",
    "ThoughtChunk",
    "Timeline",
    "ToolCallComplete",
    "ToolCallProgress",
    "ToolCallStart",
    "TransportError",
    "Turn",
    "TurnEnded",
    "TurnInProgressError",
    "authenticate_and_create",
    "build_timeline",
    "configure_logging",
    "decode_mcp_server",
    "get_auth_preferences",
    "get_session_registry",
    "start_agent_session",
]
