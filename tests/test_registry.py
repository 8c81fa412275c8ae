"""Tests for the session registry and its draft store."""

import asyncio
import time

import pytest
from acp.schema import PermissionOption, ToolCallUpdate

from acp_sessions import Attachment, PermissionHandler, SessionRegistry, Settings


class FakeSession:
    """Just enough of an AgentSession for the registry."""

    def __init__(self, name: str, close_delay: float = 0.0) -> None:
        self.name = name
        self.permissions = PermissionHandler()
        self.transport = None
        self.close_calls = 0
        self.close_delay = close_delay

    async def close(self) -> None:
        self.close_calls += 1
        self.permissions.shutdown()
        if self.close_delay:
            await asyncio.sleep(self.close_delay)

    def __repr__(self) -> str:
        return f"<FakeSession {self.name}>"


async def settle() -> None:
    """Let background close tasks run."""
    for _ in range(3):
        await asyncio.sleep(0)


class TestEviction:
    """Tests for least-recently-used eviction."""

    @pytest.mark.asyncio
    async def test_get_refreshes_recency(self) -> None:
        """Reading a session protects it from the next eviction."""
        registry = SessionRegistry(capacity=2)
        a, b, c = FakeSession("a"), FakeSession("b"), FakeSession("c")
        registry.put("A", a)
        registry.put("B", b)
        assert registry.get("A") is a

        registry.put("C", c)
        await settle()

        assert "B" not in registry
        assert registry.identities() == ["A", "C"]
        assert b.close_calls == 1
        assert a.close_calls == 0

    @pytest.mark.asyncio
    async def test_oldest_evicted_first(self) -> None:
        """Without reads, insertion order decides."""
        registry = SessionRegistry(capacity=2)
        sessions = {name: FakeSession(name) for name in "ABC"}
        for name, session in sessions.items():
            registry.put(name, session)
        await settle()

        assert registry.identities() == ["B", "C"]
        assert sessions["A"].close_calls == 1
        assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_draft_activity_counts_as_use(self) -> None:
        """Editing a draft refreshes the identity's recency."""
        registry = SessionRegistry(capacity=2)
        a, b = FakeSession("a"), FakeSession("b")
        registry.put("A", a)
        registry.put("B", b)
        registry.drafts.set_pending_input_text("A", "half a thought")

        registry.put("C", FakeSession("c"))
        await settle()

        assert "A" in registry
        assert "B" not in registry
        assert b.close_calls == 1

    @pytest.mark.asyncio
    async def test_evicted_identity_loses_drafts(self) -> None:
        """Eviction drops the identity's draft data with its session."""
        registry = SessionRegistry(capacity=1)
        registry.put("A", FakeSession("a"))
        registry.drafts.set_pending_message("A", "queued")
        registry.put("B", FakeSession("b"))
        await settle()

        assert registry.drafts.consume_pending_message("A") is None

    @pytest.mark.asyncio
    async def test_drafts_without_session_do_not_count(self) -> None:
        """Only sessions count toward capacity."""
        registry = SessionRegistry(capacity=1)
        registry.drafts.set_pending_message("X", "hello")
        registry.drafts.set_pending_message("Y", "hello")
        registry.put("A", FakeSession("a"))
        await settle()

        assert "A" in registry
        assert registry.drafts.has_data("X")

    @pytest.mark.asyncio
    async def test_put_replaces_and_closes_previous(self) -> None:
        """A new session under the same identity closes the old one."""
        registry = SessionRegistry(capacity=2)
        old, new = FakeSession("old"), FakeSession("new")
        registry.put("A", old, display_hint="Chat A")
        registry.put("A", new)
        await settle()

        assert registry.get("A") is new
        assert old.close_calls == 1
        assert registry.display_hint("A") == "Chat A"

    def test_capacity_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            SessionRegistry(capacity=0)

    def test_from_settings(self) -> None:
        registry = SessionRegistry.from_settings(Settings(max_cached_sessions=3, drain_timeout=1.5))
        assert registry.capacity == 3
        assert registry.drain_timeout == 1.5


class TestRemove:
    """Tests for removing sessions."""

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self) -> None:
        """Removing twice closes once and forgets everything."""
        registry = SessionRegistry()
        a = FakeSession("a")
        registry.put("A", a)
        registry.drafts.set_pending_input_text("A", "draft")

        registry.remove("A")
        registry.remove("A")
        await settle()

        assert a.close_calls == 1
        assert "A" not in registry
        assert registry.get("A") is None
        assert not registry.drafts.has_data("A")

    def test_remove_unknown_identity(self) -> None:
        SessionRegistry().remove("nobody")

    def test_remove_without_event_loop_terminates_transport(self) -> None:
        """Outside a running loop only the transport can be stopped."""

        class Transport:
            terminated = 0

            def terminate(self) -> None:
                self.terminated += 1

        registry = SessionRegistry()
        session = FakeSession("a")
        session.transport = Transport()
        registry.put("A", session)

        registry.remove("A")

        assert session.transport.terminated == 1
        assert session.close_calls == 0


class TestPendingPermissions:
    """Tests for the registry's view of pending permission prompts."""

    @pytest.mark.asyncio
    async def test_pending_follows_session(self) -> None:
        """The identity is pending while its session waits, and not after removal."""
        registry = SessionRegistry()
        a = FakeSession("a")
        registry.put("A", a)
        task = asyncio.create_task(
            a.permissions.request(
                "sess-1",
                ToolCallUpdate(tool_call_id="t1", title="Run tests"),
                [PermissionOption(option_id="ok", name="OK", kind="allow_once")],
            )
        )
        await asyncio.sleep(0)

        assert registry.has_pending_permission("A")
        assert registry.pending_permissions == frozenset({"A"})

        registry.remove("A")
        assert not registry.has_pending_permission("A")
        await settle()
        assert (await task).outcome.outcome == "cancelled"


class TestDrain:
    """Tests for shutting everything down."""

    @pytest.mark.asyncio
    async def test_drain_closes_everything(self) -> None:
        registry = SessionRegistry()
        sessions = [FakeSession(str(i)) for i in range(5)]
        for i, session in enumerate(sessions):
            registry.put(i, session)
        registry.drafts.set_pending_message("draft-only", "hi")

        await registry.drain_all()

        assert all(s.close_calls == 1 for s in sessions)
        assert len(registry) == 0
        assert registry.identities() == []
        assert not registry.drafts.has_data("draft-only")

    @pytest.mark.asyncio
    async def test_drain_bounded_by_one_deadline(self) -> None:
        """Slow agents are closed concurrently under a single timeout."""
        registry = SessionRegistry()
        for i in range(5):
            registry.put(i, FakeSession(str(i), close_delay=10))

        started = time.monotonic()
        await registry.drain_all(timeout=0.2)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight_closes(self) -> None:
        """Sessions already being removed are part of the drain."""
        registry = SessionRegistry()
        slow = FakeSession("slow", close_delay=0.05)
        registry.put("A", slow)
        registry.remove("A")

        await registry.drain_all(timeout=1.0)

        assert slow.close_calls == 1


class TestDraftStore:
    """Tests for draft data."""

    def test_pending_message_consumed_once(self) -> None:
        registry = SessionRegistry()
        registry.drafts.set_pending_message("A", "send me")

        assert registry.drafts.consume_pending_message("A") == "send me"
        assert registry.drafts.consume_pending_message("A") is None

    def test_input_text_peek_and_consume(self) -> None:
        """The input draft can be read without consuming it."""
        drafts = SessionRegistry().drafts
        drafts.set_pending_input_text("A", "typing...")

        assert drafts.get_draft_input_text("A") == "typing..."
        assert drafts.get_draft_input_text("A") == "typing..."
        assert drafts.consume_pending_input_text("A") == "typing..."
        assert drafts.get_draft_input_text("A") is None

    def test_clear_input_text(self) -> None:
        drafts = SessionRegistry().drafts
        drafts.set_pending_input_text("A", "typing...")
        drafts.clear_draft_input_text("A")
        assert not drafts.has_data("A")

    def test_attachments_consumed_once(self) -> None:
        drafts = SessionRegistry().drafts
        attachments = [Attachment.text("x"), Attachment.file("README.md")]
        drafts.set_pending_attachments("A", attachments)

        assert drafts.consume_pending_attachments("A") == attachments
        assert drafts.consume_pending_attachments("A") is None

    def test_identities_are_independent(self) -> None:
        drafts = SessionRegistry().drafts
        drafts.set_pending_message("A", "for A")
        drafts.set_pending_message("B", "for B")

        assert drafts.consume_pending_message("B") == "for B"
        assert drafts.consume_pending_message("A") == "for A"
