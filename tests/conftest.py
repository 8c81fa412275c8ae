"""Pytest configuration and shared fixtures for acp-sessions tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from acp import PROTOCOL_VERSION, RequestError
from acp.connection import StreamDirection, StreamEvent
from acp.schema import (
    AuthenticateResponse,
    AuthMethod,
    Implementation,
    InitializeResponse,
    NewSessionResponse,
    PromptResponse,
    SessionMode,
    SessionModeState,
    SetSessionModelResponse,
    SetSessionModeResponse,
)

from acp_sessions import AgentSession, Settings
from acp_sessions.client import SessionClient

PromptHook = Callable[[str, list[Any]], Awaitable[str | None]]


class FakeConnection:
    """Agent side of an ACP connection, scripted per test.

    ``on_prompt`` runs while a prompt is outstanding and may push updates
    through ``client``. Its return value overrides ``stop_reason``.
    """

    def __init__(self) -> None:
        self.client: SessionClient | None = None
        self.calls: list[str] = []
        self.auth_methods: list[str] = []
        self.reject_auth = False
        self.reject_new_session = False
        self.reject_settings = False
        self.modes: SessionModeState | None = None
        self.session_id = "sess-1"
        self.stop_reason = "end_turn"
        self.on_prompt: PromptHook | None = None
        self.cancelled = asyncio.Event()
        self.prompts: list[list[Any]] = []
        self.tasks: list[asyncio.Task[None]] = []
        self.new_session_error: RequestError | None = None
        self.launched: list[AgentSession] = []

    def dispatch_later(self, session_id: str, updates: list[Any], delay: float = 0.05) -> None:
        """Send updates the way the SDK hands them over.

        Each one is counted as read right away but only reaches the client
        later, on a task of its own.
        """
        client = self.client
        assert client is not None
        for _ in updates:
            client.observe_stream(
                StreamEvent(StreamDirection.INCOMING, {"method": "session/update", "params": {}})
            )

        def start() -> None:
            for update in updates:
                self.tasks.append(
                    asyncio.create_task(client.session_update(session_id=session_id, update=update))
                )

        asyncio.get_running_loop().call_later(delay, start)

    async def initialize(self, **kwargs: Any) -> InitializeResponse:
        self.calls.append("initialize")
        return InitializeResponse(
            protocol_version=PROTOCOL_VERSION,
            agent_info=Implementation(name="fake-agent", title="Fake Agent", version="1.0"),
            auth_methods=[AuthMethod(id=m, name=m.title()) for m in self.auth_methods],
        )

    async def authenticate(self, method_id: str, **kwargs: Any) -> AuthenticateResponse:
        self.calls.append(f"authenticate:{method_id}")
        if self.reject_auth:
            raise RequestError.invalid_params({"error": "bad credentials"})
        self.reject_new_session = False
        return AuthenticateResponse()

    async def new_session(self, cwd: str, mcp_servers: list[Any], **kwargs: Any) -> NewSessionResponse:
        self.calls.append("new_session")
        if self.new_session_error is not None:
            raise self.new_session_error
        if self.reject_new_session:
            raise RequestError.internal_error({"error": "authentication required"})
        return NewSessionResponse(session_id=self.session_id, modes=self.modes)

    async def prompt(self, session_id: str, prompt: list[Any], **kwargs: Any) -> PromptResponse:
        self.calls.append("prompt")
        self.prompts.append(prompt)
        stop = None
        if self.on_prompt is not None:
            stop = await self.on_prompt(session_id, prompt)
        return PromptResponse(stop_reason=stop or self.stop_reason)

    async def cancel(self, session_id: str, **kwargs: Any) -> None:
        self.calls.append("cancel")
        self.cancelled.set()

    async def set_session_mode(self, mode_id: str, session_id: str, **kwargs: Any) -> SetSessionModeResponse:
        self.calls.append(f"set_mode:{mode_id}")
        if self.reject_settings:
            raise RequestError.invalid_params({"error": f"unknown mode {mode_id}"})
        return SetSessionModeResponse()

    async def set_session_model(
        self, model_id: str, session_id: str, **kwargs: Any
    ) -> SetSessionModelResponse:
        self.calls.append(f"set_model:{model_id}")
        if self.reject_settings:
            raise RequestError.invalid_params({"error": f"unknown model {model_id}"})
        return SetSessionModelResponse()


class FakeTransport:
    """In-process transport around a ``FakeConnection``."""

    def __init__(self, connection: FakeConnection) -> None:
        self.connection = connection
        self._closed = asyncio.Event()
        self.terminated = 0
        self.close_calls = 0
        self.hang_on_close = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def terminate(self) -> None:
        self.terminated += 1
        self._closed.set()

    async def aclose(self, timeout: float = 2.0) -> None:
        self.close_calls += 1
        if self.hang_on_close:
            await asyncio.sleep(3600)
        self.terminate()

    def die(self) -> None:
        """Simulate the agent process exiting on its own."""
        self._closed.set()


def make_session(
    cwd: Path, connection: FakeConnection | None = None, **settings: Any
) -> tuple[AgentSession, FakeConnection, FakeTransport]:
    connection = connection or FakeConnection()
    transport = FakeTransport(connection)
    defaults: dict[str, Any] = {"cancel_timeout": 0.5, "drain_timeout": 0.5}
    defaults.update(settings)
    session = AgentSession("fake", cwd, settings=Settings(**defaults), transport=transport)
    connection.client = session.client
    return session, connection, transport


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def session_parts(
    tmp_path: Path, connection: FakeConnection
) -> tuple[AgentSession, FakeConnection, FakeTransport]:
    return make_session(tmp_path, connection)


@pytest.fixture
def session(session_parts: tuple[AgentSession, FakeConnection, FakeTransport]) -> AgentSession:
    return session_parts[0]


@pytest.fixture
def transport(session_parts: tuple[AgentSession, FakeConnection, FakeTransport]) -> FakeTransport:
    return session_parts[2]


@pytest_asyncio.fixture
async def ready_session(session: AgentSession) -> AsyncIterator[AgentSession]:
    """A session past the handshake with an open conversation."""
    await session.initialize()
    await session.create_session()
    yield session
    await session.close()


def mode_state(current: str, *mode_ids: str) -> SessionModeState:
    return SessionModeState(
        current_mode_id=current,
        available_modes=[SessionMode(id=m, name=m.title()) for m in mode_ids],
    )
