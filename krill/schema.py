"""The canonical versioned envelope exchanged across runtimes."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

VERSION_V2 = "v2"

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_RFC3339 = re.compile(
    r"(\d{4}-\d{2}-\d{2})[Tt](\d{2}:\d{2}:\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})"
)
_STRING_FIELDS = (
    "schema_version",
    "id",
    "client_id",
    "thread_id",
    "tenant",
    "workflow_id",
    "source_protocol",
    "role",
    "text",
)


class SchemaError(ValueError):
    """Raised when an envelope does not satisfy the schema."""


def _invalid(detail: str) -> SchemaError:
    return SchemaError(f"invalid schema: {detail}")


def _parse_time(raw: str) -> datetime | None:
    match = _RFC3339.fullmatch(raw)
    if match is None:
        raise _invalid(f"decode v2 envelope: invalid created_at {raw!r}")
    date, clock, fraction, zone = match.groups()
    digits = (fraction or ".")[1:7]
    micro = int(digits.ljust(6, "0")) if digits else 0
    offset = "+00:00" if zone in ("Z", "z") else zone
    try:
        moment = datetime.fromisoformat(f"{date}T{clock}{offset}").replace(microsecond=micro)
    except ValueError as exc:
        raise _invalid(f"decode v2 envelope: invalid created_at {raw!r}: {exc}") from exc
    return None if moment == _ZERO_TIME else moment


def _format_time(moment: datetime | None) -> str:
    if moment is None:
        moment = _ZERO_TIME
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


@dataclass
class Envelope:
    """The internal bus message representation."""

    id: str = ""
    client_id: str = ""
    thread_id: str = ""
    role: str = ""
    text: str = ""
    source_protocol: str = ""
    meta: dict[str, str] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class EnvelopeV2:
    """Versioned envelope; a created_at of None is the unset time."""

    schema_version: str = ""
    id: str = ""
    client_id: str = ""
    thread_id: str = ""
    tenant: str = ""
    workflow_id: str = ""
    hop: int = 0
    source_protocol: str = ""
    role: str = ""
    text: str = ""
    meta: dict[str, str] = field(default_factory=dict)
    capabilities: list[str] = field(default_factory=list)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON object form; empty meta and capabilities are omitted."""
        out: dict[str, Any] = {
            "schema_version": self.schema_version,
            "id": self.id,
            "client_id": self.client_id,
            "thread_id": self.thread_id,
            "tenant": self.tenant,
            "workflow_id": self.workflow_id,
            "hop": self.hop,
            "source_protocol": self.source_protocol,
            "role": self.role,
            "text": self.text,
        }
        if self.meta:
            out["meta"] = dict(self.meta)
        if self.capabilities:
            out["capabilities"] = list(self.capabilities)
        out["created_at"] = _format_time(self.created_at)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> EnvelopeV2:
        """Build an envelope from its JSON object form; unknown keys are ignored."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise _invalid("decode v2 envelope: expected a JSON object")
        values: dict[str, Any] = {}
        for name in _STRING_FIELDS:
            raw = data.get(name)
            if raw is None:
                continue
            if not isinstance(raw, str):
                raise _invalid(f"decode v2 envelope: {name} must be a string")
            values[name] = raw
        hop = data.get("hop")
        if hop is not None:
            if isinstance(hop, bool) or not isinstance(hop, int):
                raise _invalid("decode v2 envelope: hop must be an integer")
            values["hop"] = hop
        meta = data.get("meta")
        if meta is not None:
            if not isinstance(meta, Mapping) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in meta.items()
            ):
                raise _invalid("decode v2 envelope: meta must map strings to strings")
            values["meta"] = dict(meta)
        capabilities = data.get("capabilities")
        if capabilities is not None:
            if not isinstance(capabilities, list) or not all(isinstance(c, str) for c in capabilities):
                raise _invalid("decode v2 envelope: capabilities must be a list of strings")
            values["capabilities"] = list(capabilities)
        created = data.get("created_at")
        if created is not None:
            if not isinstance(created, str):
                raise _invalid("decode v2 envelope: created_at must be a string")
            values["created_at"] = _parse_time(created)
        return cls(**values)


def normalize_json(data: bytes | str, strict: bool = False) -> EnvelopeV2:
    """Decode, default and validate a JSON envelope payload."""
    try:
        decoded = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise _invalid(f"decode v2 envelope: {exc}") from exc
    envelope = EnvelopeV2.from_dict(decoded)
    version = envelope.schema_version.lower().strip()
    if version and version != VERSION_V2:
        raise _invalid(f"unsupported schema_version {json.dumps(envelope.schema_version)}")
    envelope = default_v2(envelope)
    validate_v2(envelope, strict)
    return envelope


def default_v2(envelope: EnvelopeV2) -> EnvelopeV2:
    """Return a copy with optional fields filled by backward-compatible defaults."""
    return replace(
        envelope,
        schema_version=envelope.schema_version if envelope.schema_version.strip() else VERSION_V2,
        id=envelope.id if envelope.id.strip() else str(uuid.uuid4()),
        thread_id=envelope.thread_id if envelope.thread_id.strip() else envelope.client_id,
        tenant=envelope.tenant if envelope.tenant.strip() else "default",
        workflow_id=envelope.workflow_id if envelope.workflow_id.strip() else "default",
        meta=dict(envelope.meta or {}),
        capabilities=list(envelope.capabilities or []),
        created_at=envelope.created_at or datetime.now(timezone.utc),
    )


def validate_v2(envelope: EnvelopeV2, strict: bool = False) -> None:
    """Raise SchemaError unless the required envelope fields are present."""
    if strict and envelope.schema_version.lower().strip() != VERSION_V2:
        raise _invalid(f'schema_version must be "{VERSION_V2}" in strict mode')
    for name in ("id", "client_id", "thread_id", "source_protocol", "role", "tenant", "workflow_id"):
        if not getattr(envelope, name).strip():
            raise _invalid(f"{name} is required")
    if envelope.created_at is None:
        raise _invalid("created_at is required")


def bus_to_v2(envelope: Envelope | None) -> EnvelopeV2:
    """Map a bus envelope into the versioned form, reading routing data from meta."""
    if envelope is None:
        return EnvelopeV2()
    meta = envelope.meta or {}
    hop = 0
    raw_hop = meta.get("hop", "").strip()
    if re.fullmatch(r"[+-]?\d+", raw_hop):
        hop = int(raw_hop)
    capabilities = [c.strip() for c in meta.get("capabilities", "").split(",") if c.strip()]
    return EnvelopeV2(
        schema_version=VERSION_V2,
        id=envelope.id,
        client_id=envelope.client_id,
        thread_id=envelope.thread_id,
        tenant=meta.get("tenant", ""),
        workflow_id=meta.get("workflow_id", ""),
        hop=hop,
        source_protocol=envelope.source_protocol,
        role=envelope.role,
        text=envelope.text,
        meta=dict(meta),
        capabilities=capabilities,
        created_at=envelope.created_at,
    )


def v2_to_bus(envelope: EnvelopeV2) -> Envelope:
    """Map a versioned envelope into the bus form, recording routing data in meta."""
    envelope = default_v2(envelope)
    meta = dict(envelope.meta)
    meta["schema_version"] = envelope.schema_version
    meta["tenant"] = envelope.tenant
    meta["workflow_id"] = envelope.workflow_id
    meta["hop"] = str(envelope.hop)
    if envelope.capabilities:
        meta["capabilities"] = ",".join(envelope.capabilities)
    return Envelope(
        id=envelope.id,
        client_id=envelope.client_id,
        thread_id=envelope.thread_id,
        role=envelope.role,
        text=envelope.text,
        source_protocol=envelope.source_protocol,
        meta=meta,
        created_at=envelope.created_at,
    )