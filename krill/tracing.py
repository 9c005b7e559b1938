"""Telemetry runtime: profiles, spans, metric emission and exporters."""

from __future__ import annotations

import json
import logging
import secrets
import sys
import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, TextIO
from urllib import request as urlrequest
from urllib.parse import urlsplit, urlunsplit

from krill.metrics import MetricSample, MetricStore, MetricType, register_core_metrics


class Profile(str, Enum):
    """Named telemetry overhead profile."""

    OFF = "off"
    MINIMAL = "minimal"
    STANDARD = "standard"
    DEBUG = "debug"


@dataclass(frozen=True)
class Config:
    """Exporter, sampling and service identity settings."""

    profile: str = ""
    exporter: str = ""
    endpoint: str = ""
    service_name: str = ""
    sample_rate: float = 0.0
    flush_interval_ms: int = 0
    console_debug: bool = False


DEFAULT_CONFIG = Config(
    profile=Profile.OFF.value,
    exporter="none",
    service_name="krill",
    sample_rate=1.0,
    flush_interval_ms=5000,
)

_DEFAULT_SAMPLE_RATES = {
    Profile.MINIMAL.value: 0.10,
    Profile.STANDARD.value: 0.35,
    Profile.DEBUG.value: 1.0,
}

_MINIMAL_SPANS = frozenset(
    {
        "ingress.receive",
        "ingress.validate",
        "ingress.publish",
        "bus.consume",
        "orchestrator.route",
        "agent.react",
        "agent.turn",
        "llm.call",
    }
)

_HEX_DIGITS = frozenset("0123456789abcdef")


def normalize_config(config: Config) -> Config:
    """Fill defaults and clamp values the way the runtime expects them."""
    profile = config.profile.strip().lower() or DEFAULT_CONFIG.profile
    exporter = config.exporter.strip().lower()
    if not exporter:
        exporter = "none" if profile == Profile.OFF.value else "otlp_http"
    rate = config.sample_rate
    if rate <= 0:
        rate = _DEFAULT_SAMPLE_RATES.get(profile, 1.0)
    rate = min(rate, 1.0)
    flush = config.flush_interval_ms if config.flush_interval_ms > 0 else DEFAULT_CONFIG.flush_interval_ms
    return replace(
        config,
        profile=profile,
        exporter=exporter,
        service_name=config.service_name or DEFAULT_CONFIG.service_name,
        sample_rate=rate,
        flush_interval_ms=flush,
    )


def new_trace_id() -> str:
    """Return a new random 16-byte trace identifier in hex."""
    return secrets.token_hex(16)


def new_span_id() -> str:
    """Return a new random 8-byte span identifier in hex."""
    return secrets.token_hex(8)


def is_minimal_span(name: str) -> bool:
    """Whether a span is kept under the minimal profile."""
    return name in _MINIMAL_SPANS


def _valid_hex_id(value: str, length: int) -> bool:
    return (
        len(value) == length
        and all(c in _HEX_DIGITS for c in value)
        and any(c != "0" for c in value)
    )


def _ratio_sampled(trace_id: str, rate: float) -> bool:
    if rate >= 1:
        return True
    if rate <= 0:
        return False
    bound = int(rate * (1 << 63))
    return (int(trace_id[16:], 16) >> 1) < bound


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _discard_logger() -> logging.Logger:
    logger = logging.getLogger("krill.telemetry.discard")
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


# ─── exporters ────────────────────────────────────────────────────────────────


@dataclass
class _SpanRecord:
    name: str
    trace_id: str
    span_id: str
    parent_span_id: str
    start_unix_nano: int
    end_unix_nano: int
    attributes: dict[str, str]
    error: str | None


def _sample_to_dict(sample: MetricSample) -> dict[str, Any]:
    return {
        "name": sample.name,
        "type": MetricType(sample.type).value,
        "value": sample.value,
        "count": sample.count,
        "sum": sample.sum,
        "labels": dict(sample.labels),
        "updated_at": sample.updated_at.isoformat(),
    }


class _Exporter:
    """Buffers finished spans and periodically ships spans and metrics."""

    def __init__(
        self,
        service_name: str,
        interval_s: float,
        metrics: Callable[[], list[MetricSample]],
        logger: logging.Logger,
    ) -> None:
        self._service_name = service_name
        self._interval = interval_s
        self._metrics = metrics
        self._logger = logger
        self._lock = threading.Lock()
        self._pending: list[_SpanRecord] = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="krill-telemetry-export", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def add_span(self, record: _SpanRecord) -> None:
        with self._lock:
            self._pending.append(record)

    def flush(self) -> None:
        with self._lock:
            spans, self._pending = self._pending, []
        self._send(spans, self._metrics())

    def stop(self) -> None:
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()
        self.flush()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.flush()

    def _send(self, spans: list[_SpanRecord], metrics: list[MetricSample]) -> None:
        raise NotImplementedError


class _LogExporter(_Exporter):
    def __init__(self, stream: TextIO, *args: Any) -> None:
        super().__init__(*args)
        self._stream = stream

    def _send(self, spans: list[_SpanRecord], metrics: list[MetricSample]) -> None:
        resource = {"service.name": self._service_name}
        if spans:
            doc = {"resource": resource, "spans": [asdict(s) for s in spans]}
            self._stream.write(json.dumps(doc, indent=2) + "\n")
        if metrics:
            doc = {"resource": resource, "metrics": [_sample_to_dict(m) for m in metrics]}
            self._stream.write(json.dumps(doc, indent=2) + "\n")
        self._stream.flush()


def _otlp_attributes(values: dict[str, str]) -> list[dict[str, Any]]:
    return [{"key": k, "value": {"stringValue": v}} for k, v in values.items() if k.strip()]


class _OtlpHttpExporter(_Exporter):
    def __init__(self, traces_url: str, metrics_url: str, *args: Any) -> None:
        super().__init__(*args)
        self._traces_url = traces_url
        self._metrics_url = metrics_url

    def _resource(self) -> dict[str, Any]:
        return {"attributes": _otlp_attributes({"service.name": self._service_name})}

    def _send(self, spans: list[_SpanRecord], metrics: list[MetricSample]) -> None:
        if spans:
            self._post(self._traces_url, self._traces_payload(spans))
        if metrics:
            self._post(self._metrics_url, self._metrics_payload(metrics))

    def _traces_payload(self, spans: list[_SpanRecord]) -> dict[str, Any]:
        encoded = []
        for span in spans:
            item: dict[str, Any] = {
                "traceId": span.trace_id,
                "spanId": span.span_id,
                "parentSpanId": span.parent_span_id if _valid_hex_id(span.parent_span_id, 16) else "",
                "name": span.name,
                "kind": 1,
                "startTimeUnixNano": str(span.start_unix_nano),
                "endTimeUnixNano": str(span.end_unix_nano),
                "attributes": _otlp_attributes(span.attributes),
            }
            if span.error is None:
                item["status"] = {"code": 1}
            else:
                item["status"] = {"code": 2, "message": span.error}
                item["events"] = [
                    {
                        "name": "exception",
                        "timeUnixNano": str(span.end_unix_nano),
                        "attributes": _otlp_attributes({"exception.message": span.error}),
                    }
                ]
            encoded.append(item)
        return {
            "resourceSpans": [
                {"resource": self._resource(), "scopeSpans": [{"scope": {"name": "krill"}, "spans": encoded}]}
            ]
        }

    def _metrics_payload(self, samples: list[MetricSample]) -> dict[str, Any]:
        grouped: dict[str, list[MetricSample]] = {}
        for sample in samples:
            grouped.setdefault(sample.name, []).append(sample)
        encoded = []
        for name, group in grouped.items():
            kind = MetricType(group[0].type)
            points = []
            for sample in group:
                point: dict[str, Any] = {
                    "attributes": _otlp_attributes(sample.labels),
                    "timeUnixNano": str(int(sample.updated_at.timestamp() * 1_000_000_000)),
                }
                if kind == MetricType.HISTOGRAM:
                    point["count"] = str(sample.count)
                    point["sum"] = sample.sum
                else:
                    point["asInt"] = str(int(sample.value))
                points.append(point)
            if kind == MetricType.HISTOGRAM:
                body = {"histogram": {"aggregationTemporality": 2, "dataPoints": points}}
            else:
                body = {
                    "sum": {
                        "aggregationTemporality": 2,
                        "isMonotonic": kind == MetricType.COUNTER,
                        "dataPoints": points,
                    }
                }
            encoded.append({"name": name, **body})
        return {
            "resourceMetrics": [
                {"resource": self._resource(), "scopeMetrics": [{"scope": {"name": "krill"}, "metrics": encoded}]}
            ]
        }

    def _post(self, url: str, payload: dict[str, Any]) -> None:
        req = urlrequest.Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlrequest.urlopen(req, timeout=10) as resp:
                resp.read()
        except (OSError, ValueError) as exc:
            self._logger.warning("otlp export failed: %s", exc)


# ─── runtime ──────────────────────────────────────────────────────────────────


class _Runtime:
    def __init__(self, config: Config, logger: logging.Logger) -> None:
        self.config = config
        self.profile = config.profile
        self.logger = logger
        self.metrics = MetricStore()
        register_core_metrics(self.metrics)
        self.exporter: _Exporter | None = None
        self._lock = threading.Lock()
        self._closed = False

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            exporter = self.exporter
        if exporter is not None:
            exporter.stop()


_state_lock = threading.Lock()
_current: _Runtime | None = None


def _load() -> _Runtime | None:
    with _state_lock:
        return _current


def _build_exporter(rt: _Runtime) -> _Exporter | None:
    cfg = rt.config
    common = (cfg.service_name, cfg.flush_interval_ms / 1000, rt.metrics.snapshot, rt.logger)
    if cfg.exporter == "otlp_http":
        if not cfg.endpoint:
            return None
        parts = urlsplit(cfg.endpoint)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            rt.logger.warning("otlp trace exporter init failed: invalid endpoint %r", cfg.endpoint)
            rt.logger.warning("otlp metric exporter init failed: invalid endpoint %r", cfg.endpoint)
            return None
        if parts.path in ("", "/"):
            traces = urlunsplit(parts._replace(path="/v1/traces"))
            metrics = urlunsplit(parts._replace(path="/v1/metrics"))
        else:
            traces = metrics = cfg.endpoint
        return _OtlpHttpExporter(traces, metrics, *common)
    if cfg.exporter == "log":
        return _LogExporter(sys.stdout, *common)
    return None


def configure(config: Config | None = None, logger: logging.Logger | None = None) -> None:
    """Initialise telemetry for this process, replacing any previous runtime."""
    global _current
    shutdown()
    cfg = normalize_config(config if config is not None else DEFAULT_CONFIG)
    rt = _Runtime(cfg, logger if logger is not None else _discard_logger())
    if cfg.profile != Profile.OFF.value:
        rt.exporter = _build_exporter(rt)
        if rt.exporter is not None:
            rt.exporter.start()
    with _state_lock:
        _current = rt


def shutdown() -> None:
    """Flush and close the current telemetry runtime, if any."""
    global _current
    with _state_lock:
        rt, _current = _current, None
    if rt is not None:
        rt.close()


def reset() -> None:
    """Return telemetry to the default, disabled configuration."""
    shutdown()
    configure(DEFAULT_CONFIG, _discard_logger())


def current_profile() -> Profile | str:
    rt = _load()
    if rt is None:
        return Profile.OFF
    try:
        return Profile(rt.profile)
    except ValueError:
        return rt.profile


def is_enabled() -> bool:
    return current_profile() != Profile.OFF


def snapshot_metrics() -> list[MetricSample]:
    """Return the in-memory metric samples, empty when telemetry is not configured."""
    rt = _load()
    if rt is None:
        return []
    return rt.metrics.snapshot()


# ─── spans ────────────────────────────────────────────────────────────────────


class Span:
    """Handle for one traced operation; disabled spans only carry their ids."""

    def __init__(
        self,
        name: str,
        trace_id: str = "",
        span_id: str = "",
        parent_id: str = "",
        *,
        runtime: _Runtime | None = None,
        logger: logging.Logger | None = None,
        attributes: dict[str, str] | None = None,
        sampled: bool = False,
    ) -> None:
        self.name = name
        self._trace_id = trace_id
        self._span_id = span_id
        self.parent_id = parent_id
        self._runtime = runtime
        self._logger = logger
        self._attributes = dict(attributes or {})
        self._sampled = sampled
        self._start_ns = time.time_ns()
        self._start_mono = time.monotonic()
        self._ended = False

    @property
    def enabled(self) -> bool:
        return self._runtime is not None

    @property
    def trace_id(self) -> str:
        return self._trace_id

    @property
    def span_id(self) -> str:
        return self._span_id

    def end(self, error: BaseException | None = None, **attributes: Any) -> None:
        """Finish the span, recording an optional error and extra attributes."""
        rt = self._runtime
        if rt is None or self._ended:
            return
        self._ended = True
        self._attributes.update({k: str(v) for k, v in attributes.items() if k.strip()})
        if self._sampled and rt.exporter is not None:
            rt.exporter.add_span(
                _SpanRecord(
                    name=self.name,
                    trace_id=self._trace_id,
                    span_id=self._span_id,
                    parent_span_id=self.parent_id,
                    start_unix_nano=self._start_ns,
                    end_unix_nano=time.time_ns(),
                    attributes=dict(self._attributes),
                    error=None if error is None else str(error),
                )
            )
        if rt.config.console_debug and self._logger is not None:
            self._logger.info(
                "otel span end trace_id=%s span_id=%s parent_span_id=%s span_name=%s duration_ms=%d status=%s",
                self._trace_id,
                self._span_id,
                self.parent_id,
                self.name,
                int((time.monotonic() - self._start_mono) * 1000),
                "ok" if error is None else "error",
            )


def start_span(
    logger: logging.Logger | None,
    trace_id: str,
    parent_span_id: str,
    name: str,
    **attributes: Any,
) -> Span:
    """Start a span, continuing the given trace when the parent ids are valid."""
    rt = _load()
    if (
        rt is None
        or rt.profile == Profile.OFF.value
        or (rt.profile == Profile.MINIMAL.value and not is_minimal_span(name))
    ):
        return Span(name, trace_id, parent_span_id)
    if _valid_hex_id(trace_id, 32) and _valid_hex_id(parent_span_id, 16):
        actual_trace, sampled = trace_id, True
    else:
        actual_trace = new_trace_id()
        sampled = _ratio_sampled(actual_trace, rt.config.sample_rate)
    return Span(
        name,
        actual_trace,
        new_span_id(),
        parent_span_id,
        runtime=rt,
        logger=logger if logger is not None else rt.logger,
        attributes={k: str(v) for k, v in attributes.items() if k.strip()},
        sampled=sampled,
    )


# ─── metric emission ──────────────────────────────────────────────────────────


def _metric_runtime(name: str) -> _Runtime | None:
    rt = _load()
    if rt is None or rt.profile == Profile.OFF.value or not rt.metrics.is_known(name):
        return None
    return rt


def inc_counter(name: str, delta: int = 1, labels: dict[str, str] | None = None) -> None:
    """Add to a known counter when metrics are enabled."""
    if delta == 0:
        return
    rt = _metric_runtime(name)
    if rt is None:
        return
    rt.metrics.upsert(
        MetricSample(name=name, type=MetricType.COUNTER, value=float(delta), labels=dict(labels or {}))
    )


def set_gauge(name: str, value: int, labels: dict[str, str] | None = None) -> None:
    """Record the latest value of a known gauge."""
    rt = _metric_runtime(name)
    if rt is None:
        return
    rt.metrics.upsert(
        MetricSample(name=name, type=MetricType.GAUGE, value=float(value), labels=dict(labels or {}))
    )


def observe_duration_ms(name: str, duration_ms: float, labels: dict[str, str] | None = None) -> None:
    """Record a duration sample, truncated to whole milliseconds."""
    rt = _metric_runtime(name)
    if rt is None:
        return
    ms = float(int(duration_ms))
    rt.metrics.upsert(
        MetricSample(
            name=name,
            type=MetricType.HISTOGRAM,
            value=ms,
            count=1,
            sum=ms,
            labels=dict(labels or {}),
        )
    )