"""Process-wide cache of agent sessions keyed by logical chat identity.

Bounded to ``capacity`` sessions with least-recently-used eviction. Removing
or evicting a session closes it in the background; ``drain_all`` closes
everything at shutdown under one shared deadline.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import Hashable
from typing import TYPE_CHECKING

from .drafts import DraftStore
from .permissions import PermissionCoordinator
from .settings import Settings

if TYPE_CHECKING:
    from .session import AgentSession

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 20


class SessionRegistry:
    """Caches sessions and their draft data, serialized by one lock."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        drain_timeout: float = 2.0,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = capacity
        self.drain_timeout = drain_timeout
        self._loop = loop
        self._lock = threading.RLock()
        self._sessions: dict[Hashable, AgentSession] = {}
        self._hints: dict[Hashable, str] = {}
        # Recency over every identity holding a session or draft data, oldest first
        self._order: OrderedDict[Hashable, None] = OrderedDict()
        self._closing: set[asyncio.Future[None]] = set()
        self.permissions = PermissionCoordinator()
        self.drafts = DraftStore(lock=self._lock, on_touch=self._touch_and_evict)

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionRegistry:
        return cls(capacity=settings.max_cached_sessions, drain_timeout=settings.drain_timeout)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, identity: Hashable) -> bool:
        with self._lock:
            return identity in self._sessions

    def identities(self) -> list[Hashable]:
        """Identities with a cached session, least recently used first."""
        with self._lock:
            return [identity for identity in self._order if identity in self._sessions]

    def display_hint(self, identity: Hashable) -> str | None:
        with self._lock:
            return self._hints.get(identity)

    # ========== Sessions ==========

    def get(self, identity: Hashable) -> AgentSession | None:
        """Return the cached session and mark it most recently used."""
        with self._lock:
            session = self._sessions.get(identity)
            if session is not None:
                self._touch(identity)
            return session

    def put(
        self, identity: Hashable, session: AgentSession, display_hint: str | None = None
    ) -> None:
        """Cache a session, replacing (and closing) any other one under the same identity."""
        with self._lock:
            previous = self._sessions.get(identity)
            self._sessions[identity] = session
            if display_hint is not None:
                self._hints[identity] = display_hint
            self._touch(identity)
            self.permissions.observe(identity, session)
            log.info(f"📦 Cached session for {identity} ({len(self._sessions)}/{self.capacity})")
            if previous is not None and previous is not session:
                log.info(f"♻️  Replacing session for {identity}")
                self._schedule_close(previous)
            self.evict_if_needed()

    def remove(self, identity: Hashable) -> None:
        """Forget an identity and close its session in the background."""
        with self._lock:
            self.permissions.stop_observing(identity)
            session = self._sessions.pop(identity, None)
            self._hints.pop(identity, None)
            self.drafts.clear(identity)
            self._order.pop(identity, None)
        if session is not None:
            log.info(f"🗑️  Removed session for {identity}")
            self._schedule_close(session)

    def evict_if_needed(self) -> None:
        """Evict least recently used identities until within capacity."""
        with self._lock:
            while len(self._sessions) > self.capacity and self._order:
                oldest, _ = self._order.popitem(last=False)
                self.permissions.stop_observing(oldest)
                session = self._sessions.pop(oldest, None)
                self._hints.pop(oldest, None)
                self.drafts.clear(oldest)
                if session is not None:
                    log.info(f"⏏️  Evicting least recently used session {oldest}")
                    self._schedule_close(session)

    # ========== Permissions ==========

    def has_pending_permission(self, identity: Hashable) -> bool:
        return self.permissions.is_pending(identity)

    @property
    def pending_permissions(self) -> frozenset[Hashable]:
        return self.permissions.pending

    # ========== Shutdown ==========

    async def drain_all(self, timeout: float | None = None) -> None:
        """Close every session concurrently, waiting at most ``timeout`` overall.

        Bookkeeping is cleared once the deadline passes even if some agents
        have not exited yet.
        """
        timeout = self.drain_timeout if timeout is None else timeout
        with self._lock:
            entries = list(self._sessions.items())
            in_flight = list(self._closing)

        tasks = [asyncio.ensure_future(session.close()) for _, session in entries]
        tasks.extend(in_flight)
        log.info(f"🧹 Draining {len(entries)} session(s), timeout={timeout}s")
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in done:
                self._log_close_failure(task)
            if pending:
                log.warning(f"⏱️ {len(pending)} session(s) still closing after {timeout}s")

        with self._lock:
            for identity, _ in entries:
                self.permissions.stop_observing(identity)
                self._sessions.pop(identity, None)
                self._hints.pop(identity, None)
                self._order.pop(identity, None)
            self.drafts.clear_all()
            for identity in list(self._order):
                if identity not in self._sessions:
                    self._order.pop(identity)

    # ========== Internals ==========

    def _touch(self, identity: Hashable) -> None:
        self._order[identity] = None
        self._order.move_to_end(identity)

    def _touch_and_evict(self, identity: Hashable) -> None:
        with self._lock:
            self._touch(identity)
            self.evict_if_needed()

    def _schedule_close(self, session: AgentSession) -> None:
        """Close a session without waiting for it."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            if self._loop is not None and self._loop.is_running():
                self._loop.call_soon_threadsafe(self._start_close, session)
            else:
                log.warning(f"⚠️ No event loop to close {session!r}, terminating transport only")
                transport = session.transport
                if transport is not None:
                    transport.terminate()
            return
        self._start_close(session)

    def _start_close(self, session: AgentSession) -> None:
        task = asyncio.ensure_future(session.close())
        with self._lock:
            self._closing.add(task)
        task.add_done_callback(self._close_done)

    def _close_done(self, future: asyncio.Future[None]) -> None:
        with self._lock:
            self._closing.discard(future)
        self._log_close_failure(future)

    @staticmethod
    def _log_close_failure(future: asyncio.Future[None]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            log.error(f"Error closing session: {error!r}")


# Global registry instance
_registry: SessionRegistry | None = None


def get_session_registry() -> SessionRegistry:
    """Get the global session registry."""
    global _registry
    if _registry is None:
        log.info("🌐 Creating global SessionRegistry")
        _registry = SessionRegistry.from_settings(Settings.from_env())
    return _registry
