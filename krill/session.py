"""Session service: lifecycle, history policy, branching and merging of sessions.

Every change to a session is recorded as an event. Events are appended to a
JSON-lines log, and a snapshot file of all sessions is rewritten after
structural events, so a restarted service resumes where it stopped.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from krill.metrics import SESSION_RESUME_TOTAL
from krill.session_models import (
    Event,
    EventType,
    HistoryPolicy,
    MergePolicy,
    MergeResult,
    Message,
    Mode,
    OpenRequest,
    Provenance,
    Session,
    Status,
    find_conflicts,
    merge_summary,
    summarize_messages,
)
from krill.session_store import (
    SessionStorageError,
    append_events,
    load_events,
    load_snapshots,
    save_snapshots,
    session_paths,
)
from krill.tracing import inc_counter

_log = logging.getLogger(__name__)

DEFAULT_ASYNC_QUEUE_SIZE = 256

_SNAPSHOT_EVENTS = frozenset(
    {
        EventType.OPEN,
        EventType.CHECKPOINT,
        EventType.CLOSE,
        EventType.BRANCH,
        EventType.COMMIT,
        EventType.MERGE,
        EventType.SUMMARY,
    }
)


class SessionError(Exception):
    """Raised for unknown sessions, invalid requests and merge conflicts."""


class AsyncQueueFull(SessionError):
    """Raised when the asynchronous message queue cannot take another message."""

    def __init__(self) -> None:
        super().__init__("session async queue full")


@dataclass(frozen=True)
class SessionConfig:
    """Where sessions are stored and the default history and merge policies."""

    path: str = ""
    retention_max_messages: int = 0
    summarization_threshold: int = 0
    summarization_keep_recent: int = 0
    default_merge_conflict_mode: str = ""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _thread_key(client_id: str, thread_id: str) -> str:
    return f"{client_id.strip()}:{thread_id.strip()}"


def _coerce(cls: type[Enum], value: Any) -> Any:
    try:
        return cls(value)
    except ValueError:
        return value


def _label(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _state_of(session: Session) -> Session:
    state = session.clone()
    state.events = []
    return state


@dataclass(frozen=True)
class _QueuedMessage:
    client_id: str
    thread_id: str
    message: Message
    provenance: Provenance


class SessionService:
    """Thread-safe store of sessions backed by an event log and snapshots."""

    def __init__(self, config: SessionConfig, async_queue_size: int = DEFAULT_ASYNC_QUEUE_SIZE) -> None:
        """Load persisted sessions and start the asynchronous message writer.

        async_queue_size bounds how many asynchronously recorded messages may
        wait to be written; with 0 every asynchronous record is rejected.
        """
        if async_queue_size < 0:
            raise ValueError("async_queue_size must not be negative")
        self._events_path, self._snapshots_path = session_paths(config.path)
        self._defaults = HistoryPolicy(
            retention_max_messages=config.retention_max_messages,
            summarization_threshold=config.summarization_threshold,
            summarization_keep_recent=config.summarization_keep_recent,
        )
        merge_mode = config.default_merge_conflict_mode.strip()
        self._default_merge = _coerce(MergePolicy, merge_mode) if merge_mode else MergePolicy.LAST_WRITE_WINS

        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._events: dict[str, list[Event]] = {}
        self._active: dict[str, str] = {}

        self._queue_size = async_queue_size
        self._pending: deque[_QueuedMessage] = deque()
        self._outstanding = 0
        self._closed = False
        self._queue_cond = threading.Condition()

        self._load()
        self._writer = threading.Thread(target=self._run_writer, name="krill-session-writer", daemon=True)
        self._writer.start()

    def __enter__(self) -> SessionService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # ─── async writer ─────────────────────────────────────────────────────

    def flush(self) -> None:
        """Wait until every asynchronously recorded message has been written."""
        with self._queue_cond:
            self._queue_cond.wait_for(lambda: self._outstanding == 0)

    def shutdown(self) -> None:
        """Flush pending messages and stop the asynchronous writer."""
        self.flush()
        with self._queue_cond:
            self._closed = True
            self._queue_cond.notify_all()
        if self._writer is not threading.current_thread():
            self._writer.join()

    def record_message_async(
        self, client_id: str, thread_id: str, message: Message, provenance: Provenance | None = None
    ) -> None:
        """Queue a message to be recorded by the background writer."""
        item = _QueuedMessage(client_id, thread_id, message, provenance or Provenance())
        with self._queue_cond:
            if self._closed:
                raise SessionError("session service is shut down")
            if len(self._pending) >= self._queue_size:
                raise AsyncQueueFull()
            self._pending.append(item)
            self._outstanding += 1
            self._queue_cond.notify_all()

    def _run_writer(self) -> None:
        while True:
            with self._queue_cond:
                self._queue_cond.wait_for(lambda: self._pending or self._closed)
                if not self._pending:
                    return
                item = self._pending.popleft()
            try:
                self.record_message(item.client_id, item.thread_id, item.message, item.provenance)
            except (SessionError, SessionStorageError) as exc:
                _log.warning("async session record failed: %s", exc)
            finally:
                with self._queue_cond:
                    self._outstanding -= 1
                    self._queue_cond.notify_all()

    # ─── lifecycle ────────────────────────────────────────────────────────

    def open(self, request: OpenRequest, provenance: Provenance | None = None) -> Session:
        """Open a session on a client thread, or return the one already open there."""
        with self._lock:
            if not request.client_id.strip() or not request.thread_id.strip():
                raise SessionError("client_id and thread_id are required")
            existing = self._find_open(request.client_id, request.thread_id)
            if existing is not None:
                return existing.clone()
            now = _now()
            session = Session(
                id=request.session_id.strip() or str(uuid.uuid4()),
                tenant=request.tenant.strip(),
                client_id=request.client_id.strip(),
                thread_id=request.thread_id.strip(),
                project=request.project.strip(),
                mode=_coerce(Mode, request.mode) if request.mode else Mode.PERSISTENT,
                status=Status.OPEN,
                history_policy=self._defaults,
                context={},
                opened_at=now,
                last_activity_at=now,
                next_seq=1,
            )
            self._commit(session, Event(type=EventType.OPEN, occurred_at=now, provenance=provenance or Provenance()))
            return session.clone()

    def resume(self, session_id: str, provenance: Provenance | None = None) -> Session:
        with self._lock:
            session = self._get(session_id)
            self._mark_resumed(session, provenance)
            return session.clone()

    def resume_by_thread(
        self, client_id: str, thread_id: str, provenance: Provenance | None = None
    ) -> Session | None:
        """Resume the session open on a thread; None if there is none."""
        with self._lock:
            session = self._find_open(client_id, thread_id)
            if session is None:
                return None
            self._mark_resumed(session, provenance)
            return session.clone()

    def _mark_resumed(self, session: Session, provenance: Provenance | None) -> None:
        session.last_activity_at = _now()
        self._commit(
            session,
            Event(type=EventType.RESUME, occurred_at=session.last_activity_at, provenance=provenance or Provenance()),
        )
        inc_counter(SESSION_RESUME_TOTAL, 1, {"mode": _label(session.mode)})

    def checkpoint(self, session_id: str, description: str = "", provenance: Provenance | None = None) -> Session:
        with self._lock:
            session = self._get(session_id)
            session.checkpoint_ref = f"chk-{uuid.uuid4()}"
            session.last_activity_at = _now()
            self._commit(
                session,
                Event(
                    type=EventType.CHECKPOINT,
                    occurred_at=session.last_activity_at,
                    ref=session.checkpoint_ref,
                    description=description.strip(),
                    provenance=provenance or Provenance(),
                ),
            )
            return session.clone()

    def close(self, session_id: str, provenance: Provenance | None = None) -> Session:
        with self._lock:
            session = self._get(session_id)
            now = _now()
            session.status = Status.CLOSED
            session.closed_at = now
            session.last_activity_at = now
            self._commit(session, Event(type=EventType.CLOSE, occurred_at=now, provenance=provenance or Provenance()))
            return session.clone()

    # ─── history ──────────────────────────────────────────────────────────

    def record_message(
        self, client_id: str, thread_id: str, message: Message, provenance: Provenance | None = None
    ) -> None:
        """Append a message to the session open on a thread; no-op if none is open."""
        provenance = provenance or Provenance()
        with self._lock:
            session = self._find_open(client_id, thread_id)
            if session is None:
                return
            session.messages.append(message)
            session.last_activity_at = _now()
            events = [
                Event(
                    type=EventType.MESSAGE,
                    occurred_at=session.last_activity_at,
                    message=message,
                    provenance=provenance,
                )
            ]
            events.extend(self._enforce_policy(session, provenance))
            self._commit(session, *events)

    def _enforce_policy(self, session: Session, provenance: Provenance) -> list[Event]:
        events = []
        policy = session.history_policy
        limit = policy.retention_max_messages
        if limit > 0 and len(session.messages) > limit:
            drop = len(session.messages) - limit
            session.summary = merge_summary(session.summary, summarize_messages(session.messages[:drop]))
            session.messages = session.messages[drop:]
            events.append(
                Event(type=EventType.SUMMARY, occurred_at=_now(), summary=session.summary, provenance=provenance)
            )
        threshold = policy.summarization_threshold
        keep = policy.summarization_keep_recent
        if threshold > 0 and len(session.messages) >= threshold and keep >= 0 and len(session.messages) > keep:
            cut = len(session.messages) - keep
            session.summary = merge_summary(session.summary, summarize_messages(session.messages[:cut]))
            session.messages = session.messages[cut:]
            events.append(
                Event(type=EventType.SUMMARY, occurred_at=_now(), summary=session.summary, provenance=provenance)
            )
        return events

    def restore_messages(self, session_id: str) -> list[Message]:
        """Return the messages to seed a conversation with, summary first."""
        with self._lock:
            return self._restore_list(self._get(session_id))

    def restore_messages_by_thread(self, client_id: str, thread_id: str) -> list[Message] | None:
        """Like restore_messages for the session open on a thread; None if there is none."""
        with self._lock:
            session = self._find_open(client_id, thread_id)
            return None if session is None else self._restore_list(session)

    @staticmethod
    def _restore_list(session: Session) -> list[Message]:
        out = []
        if session.summary.strip():
            out.append(Message(role="system", content=session.summary))
        out.extend(session.messages)
        return out

    # ─── branching ────────────────────────────────────────────────────────

    def branch(self, session_id: str, provenance: Provenance | None = None) -> Session:
        """Fork a session into a new open session on a derived thread."""
        provenance = provenance or Provenance()
        with self._lock:
            parent = self._get(session_id)
            now = _now()
            branch_ref = f"branch-{uuid.uuid4()}"
            child = parent.clone()
            child.id = str(uuid.uuid4())
            child.status = Status.OPEN
            child.opened_at = now
            child.closed_at = None
            child.last_activity_at = now
            child.base_session_id = parent.id
            child.base_context = dict(parent.context or {})
            child.branch_ref = branch_ref
            child.thread_id = f"{parent.thread_id}#{branch_ref}"
            child.next_seq = 1
            child.events = []
            self._commit(child, Event(type=EventType.BRANCH, occurred_at=now, ref=branch_ref, provenance=provenance))
            parent.last_activity_at = now
            self._commit(
                parent,
                Event(
                    type=EventType.BRANCH,
                    occurred_at=now,
                    ref=branch_ref,
                    description=child.id,
                    provenance=provenance,
                ),
            )
            return child.clone()

    def commit(
        self, session_id: str, changes: Mapping[str, str], provenance: Provenance | None = None
    ) -> Session:
        """Apply key/value changes to a session's context."""
        with self._lock:
            session = self._get(session_id)
            session.context.update(changes)
            session.commit_ref = f"commit-{uuid.uuid4()}"
            session.last_activity_at = _now()
            self._commit(
                session,
                Event(
                    type=EventType.COMMIT,
                    occurred_at=session.last_activity_at,
                    ref=session.commit_ref,
                    changes=dict(changes),
                    provenance=provenance or Provenance(),
                ),
            )
            return session.clone()

    def merge(
        self,
        base_session_id: str,
        branch_session_id: str,
        policy: MergePolicy | str = "",
        provenance: Provenance | None = None,
    ) -> MergeResult:
        """Merge a branch back into its base according to the conflict policy.

        With the fail policy a conflict raises SessionError; with last-write-wins
        the branch values prevail; with manual the base is left unchanged and
        the conflicting keys are reported.
        """
        provenance = provenance or Provenance()
        with self._lock:
            base = self._get(base_session_id)
            branch = self._get(branch_session_id)
            policy = _coerce(MergePolicy, policy) if policy else self._default_merge
            conflicts = find_conflicts(base.context, branch.base_context, branch.context)
            if conflicts and policy == MergePolicy.FAIL:
                raise SessionError(f"merge conflict: {', '.join(conflicts)}")
            if not conflicts or policy == MergePolicy.LAST_WRITE_WINS:
                snapshot = branch.base_context or {}
                for key, value in branch.context.items():
                    if snapshot.get(key, "") == value:
                        continue
                    base.context[key] = value
                base.messages.extend(branch.messages)
            base.merge_ref = f"merge-{uuid.uuid4()}"
            base.last_activity_at = _now()
            self._commit(
                base,
                Event(
                    type=EventType.MERGE,
                    occurred_at=base.last_activity_at,
                    ref=base.merge_ref,
                    conflicts=list(conflicts),
                    provenance=provenance,
                ),
            )
            branch.last_activity_at = base.last_activity_at
            self._commit(
                branch,
                Event(
                    type=EventType.MERGE,
                    occurred_at=branch.last_activity_at,
                    ref=base.merge_ref,
                    conflicts=list(conflicts),
                    provenance=provenance,
                ),
            )
            return MergeResult(session=base.clone(), conflicts=conflicts)

    # ─── inspection ───────────────────────────────────────────────────────

    def replay(self, session_id: str) -> list[Event]:
        """Return a session's events in ascending sequence order."""
        with self._lock:
            events = self._events.get(session_id.strip())
            if events is None:
                raise SessionError(f"session {session_id!r} not found")
            return sorted(events, key=lambda evt: evt.seq)

    def snapshot(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return None if session is None else session.clone()

    def list_sessions(self) -> list[Session]:
        with self._lock:
            return [session.clone() for session in self._sessions.values()]

    # ─── internals ────────────────────────────────────────────────────────

    def _get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id.strip())
        if session is None:
            raise SessionError(f"session {session_id!r} not found")
        return session

    def _find_open(self, client_id: str, thread_id: str) -> Session | None:
        key = _thread_key(client_id, thread_id)
        known = self._active.get(key)
        if known:
            return self._sessions.get(known)
        for session in self._sessions.values():
            if (
                session.client_id == client_id.strip()
                and session.thread_id == thread_id.strip()
                and session.status == Status.OPEN
            ):
                self._active[key] = session.id
                return session
        return None

    def _track(self, session: Session) -> None:
        key = _thread_key(session.client_id, session.thread_id)
        if session.status == Status.OPEN:
            self._active[key] = session.id
        else:
            self._active.pop(key, None)

    def _commit(self, session: Session, *events: Event) -> None:
        log = self._events.setdefault(session.id, [])
        for event in events:
            event.seq = session.next_seq
            event.session_id = session.id
            event.state = _state_of(session)
            session.next_seq += 1
            log.append(event)
        session.events = list(log)
        self._sessions[session.id] = session
        self._track(session)
        append_events(self._events_path, events)
        if any(event.type in _SNAPSHOT_EVENTS for event in events):
            save_snapshots(
                self._snapshots_path, {sid: sess.clone() for sid, sess in self._sessions.items()}
            )

    def _load(self) -> None:
        try:
            os.makedirs(os.path.dirname(self._events_path) or ".", exist_ok=True)
        except OSError as exc:
            raise SessionStorageError(f"mkdir session dir: {exc}") from exc
        for sid, session in load_snapshots(self._snapshots_path).items():
            session.events = []
            restored = session.clone()
            self._sessions[sid] = restored
            if restored.status == Status.OPEN:
                self._active[_thread_key(restored.client_id, restored.thread_id)] = restored.id
        for event in load_events(self._events_path):
            log = self._events.setdefault(event.session_id, [])
            log.append(event)
            if event.state is not None:
                session = event.state.clone()
                session.events = list(log)
                self._sessions[event.session_id] = session
                self._track(session)