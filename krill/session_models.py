"""Session data model: sessions, events, provenance and history helpers."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, TypeVar

SUMMARY_MAX_MESSAGES = 6
SUMMARY_MAX_CONTENT = 48

_ZERO_TIME_TEXT = "0001-01-01T00:00:00Z"
_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})"
)


class Mode(str, Enum):
    """Whether a session outlives the process."""

    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


class Status(str, Enum):
    """Lifecycle state of a session."""

    OPEN = "open"
    CLOSED = "closed"


class EventType(str, Enum):
    """Kind of an entry in a session's event log."""

    OPEN = "open"
    RESUME = "resume"
    CHECKPOINT = "checkpoint"
    CLOSE = "close"
    MESSAGE = "message"
    SUMMARY = "summary"
    BRANCH = "branch"
    COMMIT = "commit"
    MERGE = "merge"


class MergePolicy(str, Enum):
    """How a merge resolves keys changed on both sides."""

    FAIL = "fail"
    LAST_WRITE_WINS = "last-write-wins"
    MANUAL = "manual"


_E = TypeVar("_E", bound=Enum)


def _enum(cls: type[_E], value: Any) -> _E | str:
    """Return the enum member for a value, or the raw string when it is not one."""
    if isinstance(value, cls):
        return value
    try:
        return cls(value)
    except ValueError:
        return value


def _text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


# ─── time encoding ────────────────────────────────────────────────────────────


def _format_time(moment: datetime | None) -> str:
    if moment is None:
        return _ZERO_TIME_TEXT
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    minutes = int(offset.total_seconds() // 60) if offset else 0
    if minutes == 0:
        return text + "Z"
    sign = "+" if minutes > 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{text}{sign}{hours:02d}:{mins:02d}"


def _parse_time(raw: str) -> datetime | None:
    match = _RFC3339.fullmatch(raw)
    if match is None:
        raise ValueError(f"invalid time {raw!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "")[:6].ljust(6, "0")) if fraction else 0
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = 1 if zone[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    moment = datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )
    if moment.replace(tzinfo=None) == datetime(1, 1, 1) and not moment.utcoffset():
        return None
    return moment


# ─── decoding helpers ─────────────────────────────────────────────────────────


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")
    return data


def _get_str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _get_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _get_str_map(data: Mapping[str, Any], key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ValueError(f"{key} must map strings to strings")
    return dict(value)


def _get_str_list(data: Mapping[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings")
    return list(value)


def _get_list(data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return value


def _get_time(data: Mapping[str, Any], key: str) -> datetime | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return _parse_time(value)


# ─── value types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Message:
    """One conversation message."""

    role: str = ""
    content: str = ""


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {"role": message.role, "content": message.content}


def _message_from_dict(data: Any) -> Message:
    data = _mapping(data, "message")
    return Message(role=_get_str(data, "role"), content=_get_str(data, "content"))


@dataclass
class Provenance:
    """Who or what caused a session event."""

    actor: str = ""
    source: str = ""
    meta: dict[str, str] = field(default_factory=dict)


def _provenance_to_dict(prov: Provenance) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if prov.actor:
        out["actor"] = prov.actor
    if prov.source:
        out["source"] = prov.source
    if prov.meta:
        out["meta"] = dict(prov.meta)
    return out


def _provenance_from_dict(data: Any) -> Provenance:
    data = _mapping(data, "provenance")
    return Provenance(
        actor=_get_str(data, "actor"),
        source=_get_str(data, "source"),
        meta=_get_str_map(data, "meta"),
    )


@dataclass(frozen=True)
class HistoryPolicy:
    """Limits on how much message history a session keeps verbatim."""

    retention_max_messages: int = 0
    summarization_threshold: int = 0
    summarization_keep_recent: int = 0


def _policy_to_dict(policy: HistoryPolicy) -> dict[str, Any]:
    return {
        "retention_max_messages": policy.retention_max_messages,
        "summarization_threshold": policy.summarization_threshold,
        "summarization_keep_recent": policy.summarization_keep_recent,
    }


def _policy_from_dict(data: Any) -> HistoryPolicy:
    data = _mapping(data, "history_policy")
    return HistoryPolicy(
        retention_max_messages=_get_int(data, "retention_max_messages"),
        summarization_threshold=_get_int(data, "summarization_threshold"),
        summarization_keep_recent=_get_int(data, "summarization_keep_recent"),
    )


@dataclass
class Event:
    """One entry of a session's event log, carrying the state after it."""

    seq: int = 0
    type: EventType | str = ""
    occurred_at: datetime | None = None
    session_id: str = ""
    ref: str = ""
    message: Message | None = None
    summary: str = ""
    changes: dict[str, str] = field(default_factory=dict)
    conflicts: list[str] = field(default_factory=list)
    provenance: Provenance = field(default_factory=Provenance)
    description: str = ""
    state: Session | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; empty optional fields are omitted."""
        out: dict[str, Any] = {
            "seq": self.seq,
            "type": _text(self.type),
            "occurred_at": _format_time(self.occurred_at),
            "session_id": self.session_id,
        }
        if self.ref:
            out["ref"] = self.ref
        if self.message is not None:
            out["message"] = _message_to_dict(self.message)
        if self.summary:
            out["summary"] = self.summary
        if self.changes:
            out["changes"] = dict(self.changes)
        if self.conflicts:
            out["conflicts"] = list(self.conflicts)
        out["provenance"] = _provenance_to_dict(self.provenance)
        if self.description:
            out["description"] = self.description
        if self.state is not None:
            out["state"] = self.state.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Event:
        """Build an event from its JSON object form; raises ValueError on bad types."""
        data = _mapping(data, "event")
        message = data.get("message")
        state = data.get("state")
        return cls(
            seq=_get_int(data, "seq"),
            type=_enum(EventType, _get_str(data, "type")),
            occurred_at=_get_time(data, "occurred_at"),
            session_id=_get_str(data, "session_id"),
            ref=_get_str(data, "ref"),
            message=None if message is None else _message_from_dict(message),
            summary=_get_str(data, "summary"),
            changes=_get_str_map(data, "changes"),
            conflicts=_get_str_list(data, "conflicts"),
            provenance=_provenance_from_dict(data.get("provenance")),
            description=_get_str(data, "description"),
            state=None if state is None else Session.from_dict(state),
        )


@dataclass
class Session:
    """The full state of one conversation session."""

    id: str = ""
    tenant: str = ""
    client_id: str = ""
    thread_id: str = ""
    project: str = ""
    mode: Mode | str = ""
    status: Status | str = ""
    history_policy: HistoryPolicy = field(default_factory=HistoryPolicy)
    checkpoint_ref: str = ""
    branch_ref: str = ""
    commit_ref: str = ""
    merge_ref: str = ""
    base_session_id: str = ""
    base_context: dict[str, str] = field(default_factory=dict)
    context: dict[str, str] = field(default_factory=dict)
    summary: str = ""
    messages: list[Message] = field(default_factory=list)
    events: list[Event] = field(default_factory=list)
    opened_at: datetime | None = None
    closed_at: datetime | None = None
    last_activity_at: datetime | None = None
    next_seq: int = 0

    def clone(self) -> Session:
        """Return a copy whose maps and lists can be changed independently."""
        return replace(
            self,
            context=dict(self.context or {}),
            base_context=dict(self.base_context or {}),
            messages=list(self.messages or []),
            events=list(self.events or []),
        )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; empty optional fields are omitted."""
        out: dict[str, Any] = {
            "id": self.id,
            "tenant": self.tenant,
            "client_id": self.client_id,
            "thread_id": self.thread_id,
        }
        if self.project:
            out["project"] = self.project
        out["mode"] = _text(self.mode)
        out["status"] = _text(self.status)
        out["history_policy"] = _policy_to_dict(self.history_policy)
        for name in ("checkpoint_ref", "branch_ref", "commit_ref", "merge_ref", "base_session_id"):
            value = getattr(self, name)
            if value:
                out[name] = value
        if self.base_context:
            out["base_context"] = dict(self.base_context)
        if self.context:
            out["context"] = dict(self.context)
        if self.summary:
            out["summary"] = self.summary
        if self.messages:
            out["messages"] = [_message_to_dict(m) for m in self.messages]
        if self.events:
            out["events"] = [e.to_dict() for e in self.events]
        out["opened_at"] = _format_time(self.opened_at)
        out["closed_at"] = _format_time(self.closed_at)
        out["last_activity_at"] = _format_time(self.last_activity_at)
        out["next_seq"] = self.next_seq
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Session:
        """Build a session from its JSON object form; raises ValueError on bad types."""
        data = _mapping(data, "session")
        return cls(
            id=_get_str(data, "id"),
            tenant=_get_str(data, "tenant"),
            client_id=_get_str(data, "client_id"),
            thread_id=_get_str(data, "thread_id"),
            project=_get_str(data, "project"),
            mode=_enum(Mode, _get_str(data, "mode")),
            status=_enum(Status, _get_str(data, "status")),
            history_policy=_policy_from_dict(data.get("history_policy")),
            checkpoint_ref=_get_str(data, "checkpoint_ref"),
            branch_ref=_get_str(data, "branch_ref"),
            commit_ref=_get_str(data, "commit_ref"),
            merge_ref=_get_str(data, "merge_ref"),
            base_session_id=_get_str(data, "base_session_id"),
            base_context=_get_str_map(data, "base_context"),
            context=_get_str_map(data, "context"),
            summary=_get_str(data, "summary"),
            messages=[_message_from_dict(m) for m in _get_list(data, "messages")],
            events=[Event.from_dict(e) for e in _get_list(data, "events")],
            opened_at=_get_time(data, "opened_at"),
            closed_at=_get_time(data, "closed_at"),
            last_activity_at=_get_time(data, "last_activity_at"),
            next_seq=_get_int(data, "next_seq"),
        )


@dataclass
class OpenRequest:
    """Parameters for opening a session on a client thread."""

    client_id: str = ""
    thread_id: str = ""
    session_id: str = ""
    tenant: str = ""
    project: str = ""
    mode: Mode | str = ""


@dataclass
class MergeResult:
    """The merged base session and the keys that conflicted."""

    session: Session
    conflicts: list[str] = field(default_factory=list)


# ─── history helpers ──────────────────────────────────────────────────────────


def summarize_messages(messages: Sequence[Message] | None) -> str:
    """Condense the first few messages into a one-line summary."""
    if not messages:
        return ""
    parts = []
    for message in list(messages)[:SUMMARY_MAX_MESSAGES]:
        content = message.content.strip()
        if len(content) > SUMMARY_MAX_CONTENT:
            content = content[:SUMMARY_MAX_CONTENT] + "..."
        parts.append(f"{message.role}:{content}")
    return " | ".join(parts)


def merge_summary(current: str, following: str) -> str:
    """Join two summaries, dropping whichever is blank."""
    if not current.strip():
        return following
    if not following.strip():
        return current
    return f"{current} || {following}"


def find_conflicts(
    base_current: Mapping[str, str] | None,
    base_snapshot: Mapping[str, str] | None,
    branch_current: Mapping[str, str] | None,
) -> list[str]:
    """Return, sorted, the keys changed differently on the base and the branch."""
    base_current = base_current or {}
    base_snapshot = base_snapshot or {}
    conflicts = []
    for key, branch in (branch_current or {}).items():
        snap = base_snapshot.get(key, "")
        base = base_current.get(key, "")
        if branch == snap:
            continue
        if base != snap and base != branch:
            conflicts.append(key)
    return sorted(conflicts)