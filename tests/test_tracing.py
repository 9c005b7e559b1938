import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from krill import tracing
from krill.metrics import ACTIVE_LOOPS, MEMORY_OPS_TOTAL, SANDBOX_EXEC_DURATION
from krill.tracing import Config, Profile

LOGGER_NAME = "krill.test.telemetry"


@pytest.fixture(autouse=True)
def _clean_runtime():
    tracing.shutdown()
    yield
    tracing.shutdown()


def _logger():
    return logging.getLogger(LOGGER_NAME)


def _samples(name):
    return [s for s in tracing.snapshot_metrics() if s.name == name]


def test_metric_emission_guards():
    tracing.configure(Config(profile="standard", exporter="none", service_name="krill-test"), _logger())
    tracing.inc_counter(MEMORY_OPS_TOTAL, 1, {"op": "append"})
    tracing.inc_counter("krill.unknown.metric", 1, None)
    assert [s.value for s in _samples(MEMORY_OPS_TOTAL)] == [1.0]
    assert _samples("krill.unknown.metric") == []


def test_profile_off_drops_metrics():
    tracing.configure(Config(profile="off", exporter="none", service_name="krill-test"), _logger())
    tracing.inc_counter(MEMORY_OPS_TOTAL, 1, None)
    assert _samples(MEMORY_OPS_TOTAL) == []


def test_console_debug_span_end_log(caplog):
    tracing.configure(
        Config(profile="debug", exporter="none", service_name="krill-test", console_debug=True), _logger()
    )
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        span = tracing.start_span(None, "", "", "agent.turn", turn=1)
        span.end(None)
    assert "otel span end" in caplog.text
    assert "span_name=agent.turn" in caplog.text


def test_normalize_config_defaults():
    cfg = tracing.normalize_config(Config(profile="standard"))
    assert cfg.exporter == "otlp_http"
    assert cfg.service_name == "krill"
    assert cfg.sample_rate == 0.35
    assert cfg.flush_interval_ms == 5000


def test_normalize_config_variants():
    assert tracing.normalize_config(Config(profile=" MINIMAL ")).sample_rate == 0.10
    assert tracing.normalize_config(Config(profile="debug", sample_rate=3)).sample_rate == 1
    off = tracing.normalize_config(Config())
    assert (off.profile, off.exporter, off.sample_rate) == ("off", "none", 1.0)


def test_minimal_span_allowlist():
    assert tracing.is_minimal_span("agent.turn")
    assert not tracing.is_minimal_span("memory.append")


def test_ids_are_hex_of_expected_length():
    trace_id = tracing.new_trace_id()
    span_id = tracing.new_span_id()
    assert len(trace_id) == 32 and int(trace_id, 16) >= 0
    assert len(span_id) == 16 and int(span_id, 16) >= 0
    assert tracing.new_trace_id() != trace_id


def test_configure_and_reset():
    tracing.configure(Config(profile="debug", exporter="none", service_name="krill-test"), _logger())
    assert tracing.is_enabled()
    assert tracing.current_profile() == Profile.DEBUG

    span = tracing.start_span(None, "", "", "orchestrator.route")
    assert len(span.trace_id) == 32 and len(span.span_id) == 16
    span.end(None)
    child = tracing.start_span(None, span.trace_id, span.span_id, "llm.call")
    assert child.trace_id == span.trace_id
    assert child.parent_id == span.span_id
    assert child.span_id != span.span_id
    child.end(TimeoutError("deadline"), phase="complete")

    tracing.inc_counter(MEMORY_OPS_TOTAL, 2, {"op": "append"})
    tracing.set_gauge(ACTIVE_LOOPS, 3, None)
    tracing.observe_duration_ms(SANDBOX_EXEC_DURATION, 10, {"runtime": "exec"})
    [counter] = _samples(MEMORY_OPS_TOTAL)
    assert (counter.value, counter.labels) == (2, {"op": "append"})
    assert [g.value for g in _samples(ACTIVE_LOOPS)] == [3]
    [hist] = _samples(SANDBOX_EXEC_DURATION)
    assert (hist.count, hist.sum) == (1, 10)

    tracing.reset()
    assert tracing.current_profile() == Profile.OFF
    assert not tracing.is_enabled()


def test_zero_delta_is_ignored():
    tracing.configure(Config(profile="standard", exporter="none"), _logger())
    tracing.inc_counter(MEMORY_OPS_TOTAL, 0, None)
    assert _samples(MEMORY_OPS_TOTAL) == []


def test_invalid_trace_id_starts_new_trace():
    tracing.configure(Config(profile="debug", exporter="none"), _logger())
    span = tracing.start_span(None, "trace-bench", "", "agent.turn")
    assert span.trace_id != "trace-bench"
    assert len(span.trace_id) == 32


def test_profile_off_gives_noop_span():
    tracing.configure(Config(profile="off", exporter="none", service_name="krill-test"), _logger())
    span = tracing.start_span(None, "", "", "agent.turn")
    assert not span.enabled
    assert span.trace_id == ""
    span.end(None)
    other = tracing.start_span(None, "t", "p", "agent.turn")
    assert (other.trace_id, other.span_id) == ("t", "p")


def test_minimal_profile_disables_other_spans():
    tracing.configure(Config(profile="minimal", exporter="none"), _logger())
    assert not tracing.start_span(None, "abc", "", "memory.append").enabled
    assert tracing.start_span(None, "abc", "", "agent.turn").enabled


def test_invalid_otlp_endpoint_warns(caplog):
    with caplog.at_level(logging.WARNING, logger=LOGGER_NAME):
        tracing.configure(
            Config(profile="standard", exporter="otlp_http", endpoint="://bad", service_name="krill-test"),
            _logger(),
        )
    assert tracing.is_enabled()
    assert "exporter init failed" in caplog.text


def test_log_exporter_writes_on_shutdown(capsys):
    tracing.configure(Config(profile="debug", exporter="log", service_name="krill-test"), _logger())
    tracing.start_span(None, "", "", "agent.turn").end(None)
    tracing.shutdown()
    out = capsys.readouterr().out
    assert "agent.turn" in out
    assert "krill-test" in out
    assert "krill.session.resume_total" in out


def test_otlp_exporter_posts_spans():
    received = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            body = self.rfile.read(int(self.headers["Content-Length"]))
            received.append((self.path, json.loads(body)))
            self.send_response(200)
            self.end_headers()

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        endpoint = f"http://127.0.0.1:{server.server_address[1]}"
        tracing.configure(Config(profile="debug", exporter="otlp_http", endpoint=endpoint), _logger())
        assert tracing.current_profile() == Profile.DEBUG
        span = tracing.start_span(None, "", "", "agent.turn")
        assert span.enabled
        assert len(span.trace_id) == 32
        span.end(None)
        tracing.shutdown()
    finally:
        server.shutdown()
        server.server_close()
    assert tracing.current_profile() == Profile.OFF
    paths = [p for p, _ in received]
    assert "/v1/traces" in paths
    assert "/v1/metrics" in paths
    traces = next(doc for p, doc in received if p == "/v1/traces")
    spans = traces["resourceSpans"][0]["scopeSpans"][0]["spans"]
    assert spans[0]["name"] == "agent.turn"


def test_snapshot_empty_when_unconfigured():
    tracing.shutdown()
    assert tracing.snapshot_metrics() == []
    assert tracing.current_profile() == Profile.OFF