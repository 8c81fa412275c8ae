"""Per-identity draft data: a queued message, the input box text and queued attachments.

Owned by the ``SessionRegistry``. Every ``set_*`` refreshes the identity's
recency, which may evict a colder identity.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Hashable, Sequence

from .types import Attachment

log = logging.getLogger(__name__)


class DraftStore:
    def __init__(
        self,
        lock: threading.RLock | None = None,
        on_touch: Callable[[Hashable], None] | None = None,
    ) -> None:
        self._lock = lock or threading.RLock()
        self._on_touch = on_touch
        self._pending_messages: dict[Hashable, str] = {}
        self._input_text: dict[Hashable, str] = {}
        self._attachments: dict[Hashable, list[Attachment]] = {}

    def _touch(self, identity: Hashable) -> None:
        if self._on_touch is not None:
            self._on_touch(identity)

    # ========== Queued outbound message ==========

    def set_pending_message(self, identity: Hashable, message: str) -> None:
        with self._lock:
            self._pending_messages[identity] = message
            self._touch(identity)

    def consume_pending_message(self, identity: Hashable) -> str | None:
        with self._lock:
            return self._pending_messages.pop(identity, None)

    # ========== Input text draft ==========

    def set_pending_input_text(self, identity: Hashable, text: str) -> None:
        with self._lock:
            self._input_text[identity] = text
            self._touch(identity)

    def consume_pending_input_text(self, identity: Hashable) -> str | None:
        with self._lock:
            return self._input_text.pop(identity, None)

    def get_draft_input_text(self, identity: Hashable) -> str | None:
        """Read the draft without consuming it."""
        with self._lock:
            return self._input_text.get(identity)

    def clear_draft_input_text(self, identity: Hashable) -> None:
        with self._lock:
            self._input_text.pop(identity, None)

    # ========== Queued attachments ==========

    def set_pending_attachments(self, identity: Hashable, attachments: Sequence[Attachment]) -> None:
        with self._lock:
            self._attachments[identity] = list(attachments)
            self._touch(identity)

    def consume_pending_attachments(self, identity: Hashable) -> list[Attachment] | None:
        with self._lock:
            return self._attachments.pop(identity, None)

    # ========== Bookkeeping ==========

    def has_data(self, identity: Hashable) -> bool:
        with self._lock:
            return (
                identity in self._pending_messages
                or identity in self._input_text
                or identity in self._attachments
            )

    def clear(self, identity: Hashable) -> None:
        """Drop everything held for an identity."""
        with self._lock:
            self._pending_messages.pop(identity, None)
            self._input_text.pop(identity, None)
            self._attachments.pop(identity, None)

    def clear_all(self) -> None:
        with self._lock:
            self._pending_messages.clear()
            self._input_text.clear()
            self._attachments.clear()
