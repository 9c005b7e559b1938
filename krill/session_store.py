"""File persistence of session event logs and snapshots."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping

from krill.session_models import Event, Session

DEFAULT_SESSION_PATH = "./.krill/sessions.json"


class SessionStorageError(RuntimeError):
    """Raised when session files cannot be read, written or decoded."""


def _extension(path: str) -> str:
    name_start = path.rfind("/") + 1
    dot = path.rfind(".")
    return path[dot:] if dot >= name_start else ""


def session_paths(path: str) -> tuple[str, str]:
    """Return the event log and snapshot file paths derived from a session path."""
    if not path.strip():
        path = DEFAULT_SESSION_PATH
    ext = _extension(path)
    base = path[: len(path) - len(ext)] if ext else path
    if not base:
        base = path
    return base + ".events.jsonl", base + ".snapshots.json"


def append_events(path: str, events: Iterable[Event]) -> None:
    """Append events to the JSON-lines log, one object per line."""
    lines = [json.dumps(evt.to_dict(), separators=(",", ":")) + "\n" for evt in events]
    if not lines:
        return
    try:
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_APPEND, 0o600)
    except OSError as exc:
        raise SessionStorageError(f"open session events file: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.writelines(lines)
    except OSError as exc:
        raise SessionStorageError(f"append session event: {exc}") from exc


def load_events(path: str) -> list[Event]:
    """Read every event of the log; a missing file holds no events."""
    try:
        handle = open(path, encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise SessionStorageError(f"open session events file: {exc}") from exc
    events = []
    with handle:
        try:
            for raw in handle:
                line = raw.rstrip("\n").removesuffix("\r")
                if not line:
                    continue
                try:
                    events.append(Event.from_dict(json.loads(line)))
                except (ValueError, TypeError) as exc:
                    raise SessionStorageError(f"decode session event: {exc}") from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise SessionStorageError(f"scan session events: {exc}") from exc
    return events


def save_snapshots(path: str, snapshots: Mapping[str, Session]) -> None:
    """Atomically replace the snapshot file with the given sessions."""
    payload = json.dumps({key: snapshots[key].to_dict() for key in sorted(snapshots)}, indent=2)
    tmp = path + ".tmp"
    try:
        fd = os.open(tmp, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
    except OSError as exc:
        raise SessionStorageError(f"write temp session snapshots: {exc}") from exc
    try:
        os.replace(tmp, path)
    except OSError as exc:
        raise SessionStorageError(f"replace session snapshots: {exc}") from exc


def load_snapshots(path: str) -> dict[str, Session]:
    """Read the snapshot file; a missing, empty or null file holds no sessions."""
    try:
        with open(path, "rb") as handle:
            data = handle.read()
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise SessionStorageError(f"read session snapshots: {exc}") from exc
    if not data:
        return {}
    try:
        decoded = json.loads(data)
        if decoded is None:
            return {}
        if not isinstance(decoded, dict):
            raise ValueError("snapshots must be a JSON object")
        return {key: Session.from_dict(value) for key, value in decoded.items()}
    except (ValueError, TypeError) as exc:
        raise SessionStorageError(f"decode session snapshots: {exc}") from exc