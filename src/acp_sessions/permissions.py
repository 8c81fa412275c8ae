"""Permission prompts raised by agents before running tools.

``PermissionHandler`` holds the single outstanding prompt of one session and
suspends the agent's request until somebody answers it. ``PermissionCoordinator``
aggregates the handlers of many sessions into one observable set of identities
that are waiting on the user.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Awaitable, Callable, Hashable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Union

from acp.schema import AllowedOutcome, DeniedOutcome, RequestPermissionResponse
from psygnal import Signal

from .events import PermissionRequest

if TYPE_CHECKING:
    from .session import AgentSession

# JSON type for tool call summaries
JSON = Union[dict[str, "JSON"], list["JSON"], str, int, float, bool, None]

log = logging.getLogger(__name__)

DEFAULT_PERMISSION_TIMEOUT = 300.0


def cancelled_response() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))


def selected_response(option_id: str) -> RequestPermissionResponse:
    return RequestPermissionResponse(
        outcome=AllowedOutcome(option_id=option_id, outcome="selected")
    )


@dataclass
class PermissionPrompt:
    """The question currently put to the user."""

    request_id: str
    session_id: str
    tool_call: dict[str, JSON]
    options: list[dict[str, JSON]]

    def option_ids(self) -> list[str]:
        return [str(opt["option_id"]) for opt in self.options]

    def option_for(self, *kinds: str) -> str | None:
        """First option id whose kind matches, in order of ``kinds``."""
        for kind in kinds:
            for opt in self.options:
                if opt.get("kind") == kind:
                    return str(opt["option_id"])
        return None

    def to_event(self) -> PermissionRequest:
        return PermissionRequest(
            request_id=self.request_id,
            session_id=self.session_id,
            tool_call=self.tool_call,
            options=self.options,
        )


def _tool_call_summary(tool_call: Any) -> dict[str, JSON]:
    return {
        "tool_call_id": getattr(tool_call, "tool_call_id", None),
        "title": getattr(tool_call, "title", None),
        "kind": getattr(tool_call, "kind", None),
        "status": getattr(tool_call, "status", None),
    }


def _option_dicts(options: Sequence[Any]) -> list[dict[str, JSON]]:
    return [
        {
            "option_id": opt.option_id,
            "name": opt.name,
            "kind": getattr(opt, "kind", None),
        }
        for opt in options
    ]


class PermissionHandler:
    """Outstanding permission prompt of one session.

    ``changed`` is emitted with the new value of ``is_pending`` whenever it flips.
    """

    changed = Signal(bool)

    def __init__(self, timeout: float = DEFAULT_PERMISSION_TIMEOUT):
        self.timeout = timeout
        self._prompt: PermissionPrompt | None = None
        self._future: asyncio.Future[RequestPermissionResponse] | None = None
        self._closed = False

    @property
    def is_pending(self) -> bool:
        return self._prompt is not None

    @property
    def pending(self) -> PermissionPrompt | None:
        return self._prompt

    @property
    def closed(self) -> bool:
        return self._closed

    async def request(
        self,
        session_id: str,
        tool_call: Any,
        options: Sequence[Any],
        notify: Callable[[PermissionRequest], Awaitable[None]] | None = None,
    ) -> RequestPermissionResponse:
        """Ask the user and wait for an answer.

        A request made after ``shutdown`` is denied straight away without
        raising the pending flag. A newer request supersedes an unanswered
        older one, which resolves as cancelled. No answer within ``timeout``
        seconds also resolves as cancelled.
        """
        if self._closed:
            log.info(f"🔐 Permission request for closed session {session_id}, denying")
            return cancelled_response()
        if not options:
            log.warning("⚠️ Permission request with no options, cannot proceed")
            raise ValueError("Permission request must have at least one option")

        if self._future is not None and not self._future.done():
            log.warning(f"⚠️ Superseding unanswered permission request {self._prompt}")
            self._future.set_result(cancelled_response())

        prompt = PermissionPrompt(
            request_id=f"perm_{uuid.uuid4().hex[:8]}",
            session_id=session_id,
            tool_call=_tool_call_summary(tool_call),
            options=_option_dicts(options),
        )
        future: asyncio.Future[RequestPermissionResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._prompt = prompt
        self._future = future
        log.info(f"🔐 Requesting permission for: {prompt.tool_call.get('title')} ({prompt.request_id})")
        self.changed.emit(True)

        try:
            if notify is not None:
                await notify(prompt.to_event())
            try:
                response = await asyncio.wait_for(future, timeout=self.timeout)
            except asyncio.TimeoutError:
                log.warning(f"⏱️ Permission request {prompt.request_id} timed out, denying")
                return cancelled_response()
            log.info(f"✅ Received permission response for {prompt.request_id}")
            return response
        finally:
            if self._future is future:
                self._prompt = None
                self._future = None
                self.changed.emit(False)

    def respond(self, option_id: str) -> bool:
        """Answer the pending prompt with one of its options.

        Returns False if nothing is pending or the option is unknown.
        """
        if self._future is None or self._future.done() or self._prompt is None:
            log.warning(f"⚠️ No pending permission request to answer with {option_id}")
            return False
        if option_id not in self._prompt.option_ids():
            log.warning(f"⚠️ Unknown permission option {option_id} for {self._prompt.request_id}")
            return False
        self._future.set_result(selected_response(option_id))
        log.info(f"✅ Set permission response for {self._prompt.request_id}: {option_id}")
        return True

    def allow(self, always: bool = False) -> bool:
        if self._prompt is None:
            return False
        kinds = ("allow_always", "allow_once") if always else ("allow_once", "allow_always")
        option_id = self._prompt.option_for(*kinds)
        if option_id is None:
            log.warning(f"⚠️ No allow option offered for {self._prompt.request_id}")
            return False
        return self.respond(option_id)

    def deny(self, always: bool = False) -> bool:
        """Pick a reject option, or cancel when the agent offered none."""
        if self._prompt is None:
            return False
        kinds = ("reject_always", "reject_once") if always else ("reject_once", "reject_always")
        option_id = self._prompt.option_for(*kinds)
        if option_id is None:
            return self.cancel_pending()
        return self.respond(option_id)

    def cancel_pending(self) -> bool:
        """Resolve the pending prompt as cancelled."""
        if self._future is None or self._future.done():
            return False
        self._future.set_result(cancelled_response())
        log.info(f"🚫 Cancelled permission request {self._prompt.request_id if self._prompt else ''}")
        return True

    def shutdown(self) -> None:
        """Deny what is pending and every request that arrives from now on."""
        self._closed = True
        self.cancel_pending()


class PermissionCoordinator:
    """Tracks which identities have a permission prompt waiting.

    ``pending_changed`` is emitted with ``(identity, is_pending)``.
    """

    pending_changed = Signal(object, bool)

    def __init__(self) -> None:
        self._observed: dict[Hashable, tuple[PermissionHandler, Callable[[bool], None]]] = {}
        self._pending: set[Hashable] = set()
        self._lock = threading.RLock()

    def observe(self, identity: Hashable, session: AgentSession) -> None:
        """Start mirroring the session's pending flag, replacing any earlier observation."""
        self._disconnect(identity)
        handler = session.permissions

        def on_changed(is_pending: bool) -> None:
            self._set_pending(identity, is_pending)

        handler.changed.connect(on_changed)
        with self._lock:
            self._observed[identity] = (handler, on_changed)
        self._set_pending(identity, handler.is_pending)

    def stop_observing(self, identity: Hashable) -> None:
        """Stop observing and drop the identity from the pending set."""
        self._disconnect(identity)
        self._set_pending(identity, False)

    def is_pending(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._pending

    @property
    def pending(self) -> frozenset[Hashable]:
        with self._lock:
            return frozenset(self._pending)

    def is_observing(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._observed

    def _disconnect(self, identity: Hashable) -> None:
        with self._lock:
            entry = self._observed.pop(identity, None)
        if entry is not None:
            handler, callback = entry
            handler.changed.disconnect(callback)

    def _set_pending(self, identity: Hashable, is_pending: bool) -> None:
        with self._lock:
            was_pending = identity in self._pending
            if is_pending:
                self._pending.add(identity)
            else:
                self._pending.discard(identity)
        if was_pending != is_pending:
            log.debug(f"🔐 Pending permission for {identity}: {is_pending}")
            self.pending_changed.emit(identity, is_pending)
