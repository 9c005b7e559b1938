"""Trace metadata carried implicitly through the current execution context."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(frozen=True)
class TraceInfo:
    """Identifiers of the trace, span and request currently being served."""

    trace_id: str = ""
    span_id: str = ""
    request_id: str = ""


_CURRENT: ContextVar[TraceInfo] = ContextVar("krill_trace", default=TraceInfo())


@contextmanager
def trace_scope(trace_id: str, span_id: str, request_id: str) -> Iterator[TraceInfo]:
    """Make the given trace metadata current for the duration of the block."""
    info = TraceInfo(trace_id=trace_id, span_id=span_id, request_id=request_id)
    token = _CURRENT.set(info)
    try:
        yield info
    finally:
        _CURRENT.reset(token)


def current_trace() -> TraceInfo:
    """Return the trace metadata of the current context; empty ids when none is set."""
    return _CURRENT.get()