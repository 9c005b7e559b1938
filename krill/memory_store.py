"""A memory store wrapper that mirrors written messages into sessions."""

from __future__ import annotations

import contextlib
from collections.abc import Sequence
from typing import Any

from krill.session import SessionService
from krill.session_models import Message, Provenance


class MemoryStore:
    """Delegates to a base memory store and records appended messages in sessions.

    The base store must offer append, append_batch, get, snapshot, restore,
    trim and clear, all taking the client and thread ids first.
    """

    def __init__(self, base: Any, service: SessionService) -> None:
        self.base = base
        self.service = service

    def append(self, client_id: str, thread_id: str, message: Message) -> None:
        self.base.append(client_id, thread_id, message)
        self.service.record_message_async(
            client_id, thread_id, message, Provenance(actor="memory", source="memory.append")
        )

    def append_batch(self, client_id: str, thread_id: str, messages: Sequence[Message]) -> None:
        self.base.append_batch(client_id, thread_id, messages)
        for message in messages:
            self.service.record_message_async(
                client_id, thread_id, message, Provenance(actor="memory", source="memory.append_batch")
            )

    def get(self, client_id: str, thread_id: str, window: int) -> Any:
        return self.base.get(client_id, thread_id, window)

    def snapshot(self, client_id: str, thread_id: str) -> Any:
        return self.base.snapshot(client_id, thread_id)

    def restore(self, client_id: str, thread_id: str, snapshot: Any) -> None:
        self.base.restore(client_id, thread_id, snapshot)

    def trim(self, client_id: str, thread_id: str, keep: int) -> None:
        self.base.trim(client_id, thread_id, keep)

    def clear(self, client_id: str, thread_id: str) -> None:
        self.base.clear(client_id, thread_id)

    def hydrate(self, client_id: str, thread_id: str, messages: Sequence[Message]) -> None:
        """Load persisted messages into the base store without recording them again."""
        # Hydration is best effort: a failing backend leaves the store as it was.
        with contextlib.suppress(Exception):
            self.base.append_batch(client_id, thread_id, messages)

    def close(self) -> None:
        """Close the base store if it can be closed."""
        closer = getattr(self.base, "close", None)
        if callable(closer):
            closer()


def wrap_memory_store(base: Any, service: SessionService | None) -> Any:
    """Wrap a memory store with session persistence; without both, return base as is."""
    if base is None or service is None:
        return base
    return MemoryStore(base, service)