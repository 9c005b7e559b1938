"""In-memory registry of known telemetry metrics and their aggregated samples."""

from __future__ import annotations

import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

ACTIVE_LOOPS = "krill.active_loops"
INBOUND_QUEUE_DEPTH = "krill.inbound_queue_depth"
SKILL_ACTIVATIONS = "krill.skill.activations_total"
MEMORY_OPS_TOTAL = "krill.memory.ops_total"
MEMORY_BYTES = "krill.memory.bytes"
SANDBOX_EXEC_DURATION = "krill.sandbox.exec_duration_ms"
AGENT_HANDOFF_TOTAL = "krill.agent.handoff_total"
SCHEDULER_TRIGGERS = "krill.scheduler.trigger_total"
SESSION_RESUME_TOTAL = "krill.session.resume_total"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetricType(str, Enum):
    """Kind of a metric, deciding how repeated samples aggregate."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass
class MetricSample:
    """The latest aggregated state of one metric for one label set."""

    name: str
    type: MetricType
    value: float = 0.0
    count: int = 0
    sum: float = 0.0
    labels: dict[str, str] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=_utcnow)


def metric_key(name: str, labels: Mapping[str, str] | None) -> str:
    """Return the identity of a sample: its name plus its sorted labels."""
    if not labels:
        return name
    parts = ",".join(f"{key}={labels[key]}" for key in sorted(labels))
    return f"{name}|{parts}"


class MetricStore:
    """Thread-safe store that only accepts samples of registered metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._defs: dict[str, MetricType] = {}
        self._samples: dict[str, MetricSample] = {}

    def register(self, name: str, metric_type: MetricType) -> None:
        with self._lock:
            self._defs[name] = MetricType(metric_type)

    def is_known(self, name: str) -> bool:
        with self._lock:
            return name in self._defs

    def upsert(self, sample: MetricSample) -> None:
        """Merge a sample: counters add values, histograms add count and sum."""
        with self._lock:
            if sample.name not in self._defs:
                return
            key = metric_key(sample.name, sample.labels)
            stored = replace(sample, labels=dict(sample.labels or {}))
            previous = self._samples.get(key)
            if previous is not None:
                if sample.type == MetricType.COUNTER:
                    stored.value += previous.value
                elif sample.type == MetricType.HISTOGRAM:
                    stored.count += previous.count
                    stored.sum += previous.sum
            self._samples[key] = stored

    def snapshot(self) -> list[MetricSample]:
        """Return copies of all samples ordered by their metric key."""
        with self._lock:
            samples = [replace(s, labels=dict(s.labels)) for s in self._samples.values()]
        samples.sort(key=lambda s: metric_key(s.name, s.labels))
        return samples


def register_core_metrics(store: MetricStore) -> None:
    """Register the built-in metrics and seed the zero-valued counters."""
    store.register(ACTIVE_LOOPS, MetricType.GAUGE)
    store.register(INBOUND_QUEUE_DEPTH, MetricType.GAUGE)
    store.register(SKILL_ACTIVATIONS, MetricType.COUNTER)
    store.register(MEMORY_OPS_TOTAL, MetricType.COUNTER)
    store.register(MEMORY_BYTES, MetricType.GAUGE)
    store.register(SANDBOX_EXEC_DURATION, MetricType.HISTOGRAM)
    store.register(AGENT_HANDOFF_TOTAL, MetricType.COUNTER)
    store.register(SCHEDULER_TRIGGERS, MetricType.COUNTER)
    store.register(SESSION_RESUME_TOTAL, MetricType.COUNTER)
    now = _utcnow()
    for name in (AGENT_HANDOFF_TOTAL, SCHEDULER_TRIGGERS, SESSION_RESUME_TOTAL):
        store.upsert(MetricSample(name=name, type=MetricType.COUNTER, value=0.0, updated_at=now))