"""Agent session: the client-side state machine for one ACP conversation.

Usage:
    session = AgentSession("echo", cwd="/path/to/project")
    await session.launch("python", ["echo_agent.py"])
    await session.initialize()
    await session.create_session()

    turn = session.send_turn("Hello")
    async for event in turn:
        print(event)

    await session.close()
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from acp import PROTOCOL_VERSION, RequestError, text_block
from acp.schema import ClientCapabilities, FileSystemCapability, Implementation, RequestPermissionResponse
from psygnal import Signal
from pydantic import ValidationError

from .client import SessionClient
from .errors import (
    AuthenticationError,
    InvalidStateError,
    NoActiveSessionError,
    ProtocolError,
    TransportError,
    TurnInProgressError,
)
from .events import ModeChanged, StreamEvent, TurnEnded
from .filesystem import FileAccess
from .permissions import PermissionHandler, cancelled_response
from .settings import Settings
from .transport import AgentProcess, Transport
from .types import (
    AgentCapabilities,
    AgentInfo,
    Attachment,
    AuthMethod,
    ClientInfo,
    MCPServerConfig,
    ModelsInfo,
    ModesInfo,
    SessionId,
    StopReason,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    AUTH_REQUIRED = "auth_required"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


class Turn:
    """Async iterator over the events of one prompt turn.

    Events come out in the order the agent sent them. The last event is always
    a ``TurnEnded``. When the buffer is full, delivery blocks instead of
    dropping events.
    """

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(maxsize)
        self._stop: asyncio.Future[StopReason] = asyncio.get_running_loop().create_future()
        self._finished = False

    @property
    def ended(self) -> bool:
        return self._stop.done()

    @property
    def stop_reason(self) -> StopReason | None:
        if self._stop.done() and not self._stop.cancelled() and self._stop.exception() is None:
            return self._stop.result()
        return None

    async def put(self, event: StreamEvent) -> bool:
        """Queue an event, waiting for room. Returns False if the turn ended first."""
        if self._stop.done():
            return False
        putter = asyncio.ensure_future(self._queue.put(event))
        try:
            await asyncio.wait({putter, self._stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not putter.done():
                putter.cancel()
        return putter.done() and not putter.cancelled()

    def end(self, stop_reason: StopReason, discard: bool = False) -> bool:
        """Mark the turn as finished. Returns False if it already was."""
        if self._stop.done():
            return False
        if discard:
            self._discard()
        self._stop.set_result(stop_reason)
        return True

    def fail(self, error: BaseException) -> bool:
        if self._stop.done():
            return False
        self._stop.set_exception(error)
        return True

    async def wait(self) -> StopReason:
        """Wait for the turn to end and return why it ended."""
        return await asyncio.shield(self._stop)

    async def collect(self) -> list[StreamEvent]:
        """Consume the whole turn."""
        return [event async for event in self]

    def _discard(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def __aiter__(self) -> Turn:
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        while True:
            if not self._queue.empty():
                return self._queue.get_nowait()
            if self._stop.done():
                self._finished = True
                # Re-raises the protocol error that failed the turn
                return TurnEnded(self._stop.result())
            getter = asyncio.ensure_future(self._queue.get())
            try:
                await asyncio.wait({getter, self._stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return getter.result()


class AgentSession:
    """One agent process and the ACP conversation held with it."""

    state_changed = Signal(object)
    """Emitted with the new ``SessionState`` on every transition."""

    event_received = Signal(object)
    """Emitted with stream events that arrive while no turn is running."""

    def __init__(
        self,
        agent_name: str,
        cwd: str | Path | None = None,
        *,
        settings: Settings | None = None,
        transport: Transport | None = None,
        client_info: ClientInfo | None = None,
    ) -> None:
        self.agent_name = agent_name
        self.cwd = Path(cwd or os.getcwd())
        self.settings = settings or Settings()
        self.client_info = client_info or ClientInfo(
            name=self.settings.client_name,
            title=self.settings.client_title,
            version=self.settings.client_version,
        )
        self.permissions = PermissionHandler(timeout=self.settings.permission_timeout)
        self.files = FileAccess(self.cwd)
        self.client = SessionClient(self)

        self.session_id: SessionId | None = None
        self.agent_info: AgentInfo | None = None
        self.agent_capabilities = AgentCapabilities()
        self.auth_methods: tuple[AuthMethod, ...] = ()
        self.auth_error: str | None = None
        self.modes: ModesInfo | None = None
        self.models: ModelsInfo | None = None
        self.last_stop_reason: StopReason | None = None

        self._state = SessionState.UNINITIALIZED
        self._transport: Transport | None = None
        self._turn: Turn | None = None
        self._turn_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._close_task: asyncio.Task[None] | None = None
        if transport is not None:
            self._transport = transport

    def __repr__(self) -> str:
        return f"<AgentSession {self.agent_name} {self._state.value} {self.session_id}>"

    # ========== Observable state ==========

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    @property
    def is_closed(self) -> bool:
        return self._state in (SessionState.CLOSING, SessionState.CLOSED)

    @property
    def needs_authentication(self) -> bool:
        return self._state is SessionState.AUTH_REQUIRED

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        log.info(f"🔄 {self.agent_name}: {self._state.value} → {state.value}")
        self._state = state
        self.state_changed.emit(state)

    def _require(self, *states: SessionState) -> None:
        if self._state not in states:
            expected = ", ".join(s.value for s in states)
            raise InvalidStateError(
                f"Session is {self._state.value}, expected one of: {expected}"
            )

    # ========== Transport ==========

    async def launch(
        self,
        executable: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Spawn the agent process.

        Raises:
            TransportError: if the process cannot be started. The session is
                then ``CLOSING``.
        """
        self._require(SessionState.UNINITIALIZED)
        if self._transport is not None:
            raise InvalidStateError("Session already has a transport")
        try:
            transport = await AgentProcess.spawn(
                self.client,
                executable,
                args,
                env=env,
                cwd=self.cwd,
                stdout_limit=self.settings.stdout_limit,
                observers=[self.client.observe_stream],
            )
        except TransportError as e:
            self._force_closing(str(e))
            raise
        self._transport = transport
        self._watch_transport()

    def _watch_transport(self) -> None:
        if self._watch_task is None and self._transport is not None:
            self._watch_task = asyncio.create_task(self._watch_exit(self._transport))

    async def _watch_exit(self, transport: Transport) -> None:
        await transport.wait_closed()
        if not self.is_closed:
            self._force_closing("agent process exited")

    def _connection(self) -> Any:
        if self._transport is None:
            raise TransportError("Agent process is not running")
        return self._transport.connection

    async def _call(self, request: Awaitable[T]) -> T:
        """Await a request, racing it against transport loss.

        Raises:
            ProtocolError: if the agent rejects the request or answers with
                something malformed.
            TransportError: if the transport closes first.
        """
        transport = self._transport
        request_task = asyncio.ensure_future(request)
        if transport is None or transport.closed:
            request_task.cancel()
            raise TransportError("Agent process has exited")

        closed_task = asyncio.ensure_future(transport.wait_closed())
        try:
            await asyncio.wait({request_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closed_task.cancel()
            if not request_task.done():
                request_task.cancel()

        if not request_task.done() or request_task.cancelled():
            raise TransportError("Agent process exited before responding")
        try:
            return request_task.result()
        except RequestError as e:
            raise ProtocolError(str(e)) from e
        except ValidationError as e:
            raise ProtocolError(f"Malformed response from agent: {e}") from e
        except (ConnectionError, EOFError) as e:
            raise TransportError(f"Connection to agent lost: {e}") from e

    # ========== Handshake & authentication ==========

    async def initialize(self) -> None:
        """Exchange capabilities with the agent.

        Ends in ``READY`` when the agent lists no auth methods, otherwise in
        ``AUTH_REQUIRED`` with ``auth_methods`` filled in.
        """
        self._require(SessionState.UNINITIALIZED)
        conn = self._connection()
        self._watch_transport()
        self._set_state(SessionState.HANDSHAKING)
        try:
            response = await self._call(
                conn.initialize(
                    protocol_version=PROTOCOL_VERSION,
                    client_capabilities=ClientCapabilities(
                        fs=FileSystemCapability(
                            read_text_file=True,
                            write_text_file=True,
                        ),
                        terminal=False,
                    ),
                    client_info=Implementation(
                        name=self.client_info.name,
                        title=self.client_info.title,
                        version=self.client_info.version,
                    ),
                )
            )
        except ProtocolError:
            self._set_state(SessionState.UNINITIALIZED)
            raise
        except TransportError as e:
            self._force_closing(str(e))
            raise ProtocolError(f"Agent went away during handshake: {e}") from e

        if response is None or not isinstance(getattr(response, "protocol_version", None), int):
            self._set_state(SessionState.UNINITIALIZED)
            raise ProtocolError(f"Malformed initialize response: {response!r}")

        log.info(f"📋 ACP Initialize response: {response}")
        self.agent_info = AgentInfo.from_acp(response.agent_info)
        self.agent_capabilities = AgentCapabilities.from_acp(response.agent_capabilities)
        self.auth_methods = tuple(AuthMethod.from_acp(m) for m in response.auth_methods or [])

        name = self.agent_info.display_name if self.agent_info else self.agent_name
        log.info(f"Agent connected: {name}, auth methods: {[m.id for m in self.auth_methods]}")
        if self.auth_methods:
            self._set_state(SessionState.AUTH_REQUIRED)
        else:
            self._set_state(SessionState.READY)

    async def authenticate(self, method_id: str) -> None:
        """Authenticate with one of the advertised methods.

        On rejection the session stays in ``AUTH_REQUIRED`` with the reason in
        ``auth_error``.
        """
        self._require(SessionState.AUTH_REQUIRED)
        conn = self._connection()
        self._set_state(SessionState.AUTHENTICATING)
        log.info(f"🔑 Authenticating {self.agent_name} with {method_id}")
        try:
            await self._call(conn.authenticate(method_id=method_id))
        except ProtocolError as e:
            self.auth_error = str(e)
            self._set_state(SessionState.AUTH_REQUIRED)
            log.warning(f"❌ Authentication with {method_id} failed: {e}")
            raise AuthenticationError(str(e)) from e
        except TransportError as e:
            self._force_closing(str(e))
            raise
        self.auth_error = None
        self._set_state(SessionState.READY)

    # ========== Session lifecycle ==========

    async def create_session(self, mcp_servers: Sequence[MCPServerConfig] = ()) -> SessionId:
        """Open a conversation with the agent in ``cwd``."""
        self._require(SessionState.READY)
        return await self._new_session(mcp_servers)

    async def create_session_without_auth(
        self, mcp_servers: Sequence[MCPServerConfig] = ()
    ) -> SessionId:
        """Skip authentication and try to open a conversation anyway.

        If the agent refuses, the session goes back to ``AUTH_REQUIRED``.
        """
        self._require(SessionState.AUTH_REQUIRED)
        session_id = await self._new_session(mcp_servers)
        self._set_state(SessionState.READY)
        return session_id

    async def _new_session(self, mcp_servers: Sequence[MCPServerConfig]) -> SessionId:
        conn = self._connection()
        self.session_id = None
        try:
            response = await self._call(
                conn.new_session(
                    cwd=str(self.cwd),
                    mcp_servers=[server.to_acp() for server in mcp_servers],
                )
            )
        except TransportError as e:
            self._force_closing(str(e))
            raise
        if response is None or not getattr(response, "session_id", None):
            raise ProtocolError(f"Malformed session/new response: {response!r}")

        self.session_id = SessionId(response.session_id)
        self.modes = ModesInfo.from_acp(getattr(response, "modes", None))
        self.models = ModelsInfo.from_acp(getattr(response, "models", None))
        log.info(f"Created session {self.session_id} in {self.cwd}")
        return self.session_id

    # ========== Turns ==========

    def send_turn(self, prompt: str, attachments: Sequence[Attachment] = ()) -> Turn:
        """Start a prompt turn and return its event stream.

        Raises:
            TurnInProgressError: if a turn is already running.
            NoActiveSessionError: if no session has been created.
            InvalidStateError: if the session is not ``READY``.
        """
        if self._state is SessionState.RUNNING:
            raise TurnInProgressError()
        if self.session_id is None and not self.is_closed:
            raise NoActiveSessionError()
        self._require(SessionState.READY)

        blocks: list[Any] = [text_block(prompt)]
        for attachment in attachments:
            blocks.extend(attachment.to_blocks(self.cwd))

        turn = Turn(maxsize=self.settings.event_queue_size)
        self._turn = turn
        self._set_state(SessionState.RUNNING)
        log.info(f"🚀 Sending prompt to {self.agent_name}: {prompt!r}")
        self._turn_task = asyncio.create_task(self._run_turn(turn, blocks))
        return turn

    async def _run_turn(self, turn: Turn, blocks: list[Any]) -> None:
        assert self.session_id is not None
        conn = self._connection()
        try:
            response = await self._call(
                conn.prompt(session_id=self.session_id.value, prompt=blocks)
            )
            stop_reason = StopReason.decode(getattr(response, "stop_reason", None) or "")
        except TransportError as e:
            log.warning(f"⚠️ Turn aborted: {e}")
            self._force_closing(str(e))
            return
        except ProtocolError as e:
            log.warning(f"⚠️ Turn failed: {e}")
            await self.client.settle()
            turn.fail(e)
            self._finish_turn(turn)
            return
        except Exception as e:
            log.exception(f"Turn failed unexpectedly: {e}")
            turn.fail(e)
            self._finish_turn(turn)
            return

        # The response can overtake updates the SDK has not handed over yet
        await self.client.settle()
        log.info(f"🏁 Turn ended: {stop_reason.value}")
        if turn.end(stop_reason):
            self.last_stop_reason = stop_reason
        self._finish_turn(turn)

    def _finish_turn(self, turn: Turn) -> None:
        if self._turn is turn:
            self._turn = None
            self._turn_task = None
            if self._state is SessionState.RUNNING:
                self._set_state(SessionState.READY)

    async def deliver(self, session_id: str, event: StreamEvent) -> None:
        """Route an event from the agent to the running turn, in order.

        Blocks while the turn's buffer is full.
        """
        if self.session_id is not None and session_id != self.session_id.value:
            log.warning(f"⚠️ Dropping event for unknown session {session_id}: {event}")
            return
        if isinstance(event, ModeChanged):
            self.modes = (
                self.modes.with_current(event.mode_id)
                if self.modes
                else ModesInfo(current_mode_id=event.mode_id)
            )
        turn = self._turn
        if turn is not None and not turn.ended and await turn.put(event):
            return
        self.event_received.emit(event)

    async def cancel(self) -> StopReason:
        """Ask the agent to stop the running turn.

        Waits at most ``settings.cancel_timeout`` for the turn to end, then
        treats the agent as unresponsive and forces ``CLOSING``.
        """
        turn = self._turn
        if self._state is not SessionState.RUNNING or turn is None:
            raise InvalidStateError(f"No turn to cancel, session is {self._state.value}")
        assert self.session_id is not None
        log.info(f"🛑 Cancelling turn in {self.session_id}")
        self.permissions.cancel_pending()

        async def cancel_and_wait() -> StopReason:
            await self._connection().cancel(session_id=self.session_id.value)
            return await turn.wait()

        try:
            return await asyncio.wait_for(cancel_and_wait(), timeout=self.settings.cancel_timeout)
        except asyncio.TimeoutError:
            log.warning(f"⏱️ Agent did not acknowledge cancel within {self.settings.cancel_timeout}s")
        except (ConnectionError, OSError) as e:
            log.warning(f"⚠️ Could not send cancel: {e}")
        self._force_closing("agent did not acknowledge cancel")
        return StopReason.ABORTED

    # ========== Permissions ==========

    async def handle_permission_request(
        self,
        session_id: str,
        tool_call: Any,
        options: Sequence[Any],
        notify: Callable[[StreamEvent], Awaitable[None]] | None = None,
    ) -> RequestPermissionResponse:
        if self.is_closed:
            log.info(f"🔐 Denying permission request, session is {self._state.value}")
            return cancelled_response()

        async def deliver_prompt(event: StreamEvent) -> None:
            await self.deliver(session_id, event)

        return await self.permissions.request(
            session_id, tool_call, options, notify=notify or deliver_prompt
        )

    def respond_to_permission(self, option_id: str) -> bool:
        return self.permissions.respond(option_id)

    # ========== Modes & models ==========

    async def switch_mode(self, mode_id: str) -> None:
        """Switch session mode. Local state changes only once the agent agrees."""
        self._require(SessionState.READY)
        if self.session_id is None:
            raise NoActiveSessionError()
        await self._settings_call(
            self._connection().set_session_mode(
                mode_id=mode_id, session_id=self.session_id.value
            )
        )
        self.modes = (
            self.modes.with_current(mode_id) if self.modes else ModesInfo(current_mode_id=mode_id)
        )
        log.info(f"Mode switched to {mode_id}")

    async def switch_model(self, model_id: str) -> None:
        """Switch session model. Local state changes only once the agent agrees."""
        self._require(SessionState.READY)
        if self.session_id is None:
            raise NoActiveSessionError()
        await self._settings_call(
            self._connection().set_session_model(
                model_id=model_id, session_id=self.session_id.value
            )
        )
        self.models = (
            self.models.with_current(model_id)
            if self.models
            else ModelsInfo(current_model_id=model_id)
        )
        log.info(f"Model switched to {model_id}")

    async def _settings_call(self, request: Awaitable[Any]) -> Any:
        try:
            return await self._call(request)
        except TransportError as e:
            self._force_closing(str(e))
            raise

    # ========== Teardown ==========

    def _force_closing(self, reason: str) -> None:
        """Move to ``CLOSING`` after a transport failure and tear down in the background."""
        if self.is_closed:
            return
        log.warning(f"⚠️ {self.agent_name}: forcing close ({reason})")
        self._set_state(SessionState.CLOSING)
        self.permissions.shutdown()
        turn = self._turn
        if turn is not None:
            turn.end(StopReason.ABORTED)
            self.last_stop_reason = StopReason.ABORTED
        self._ensure_close_task()

    def _ensure_close_task(self) -> asyncio.Task[None]:
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._shutdown())
        return self._close_task

    async def close(self) -> None:
        """Terminate the agent and release everything. Never raises."""
        if self._state is SessionState.CLOSED:
            return
        await asyncio.shield(self._ensure_close_task())

    async def _shutdown(self) -> None:
        self._set_state(SessionState.CLOSING)
        self.permissions.shutdown()

        turn = self._turn
        if turn is not None and turn.end(StopReason.ABORTED, discard=True):
            self.last_stop_reason = StopReason.ABORTED
        task = self._turn_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            results = await asyncio.gather(task, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    log.warning(f"Turn task ended with {result!r} during close")
        self._turn = None
        self._turn_task = None

        if self._transport is not None:
            try:
                await self._transport.aclose(timeout=self.settings.drain_timeout)
            except Exception:
                log.exception(f"Error terminating agent {self.agent_name}")

        if self._watch_task is not None and not self._watch_task.done():
            self._watch_task.cancel()
        self._set_state(SessionState.CLOSED)
        log.info(f"Closed session {self.session_id} ({self.agent_name})")
