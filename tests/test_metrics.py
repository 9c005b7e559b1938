import pytest

from krill.metrics import (
    ACTIVE_LOOPS,
    AGENT_HANDOFF_TOTAL,
    MEMORY_OPS_TOTAL,
    SANDBOX_EXEC_DURATION,
    SCHEDULER_TRIGGERS,
    SESSION_RESUME_TOTAL,
    MetricSample,
    MetricStore,
    MetricType,
    metric_key,
    register_core_metrics,
)


@pytest.fixture
def store():
    s = MetricStore()
    register_core_metrics(s)
    return s


def _find(samples, name):
    return [s for s in samples if s.name == name]


def test_upsert_branches(store):
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=1))
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=2))
    store.upsert(MetricSample(SANDBOX_EXEC_DURATION, MetricType.HISTOGRAM, value=3, count=1, sum=3))
    store.upsert(MetricSample(SANDBOX_EXEC_DURATION, MetricType.HISTOGRAM, value=5, count=1, sum=5))
    store.upsert(MetricSample("krill.unknown", MetricType.COUNTER, value=99))

    snap = store.snapshot()
    [counter] = _find(snap, MEMORY_OPS_TOTAL)
    assert counter.value == 3
    [hist] = _find(snap, SANDBOX_EXEC_DURATION)
    assert (hist.count, hist.sum, hist.value) == (2, 8, 5)
    assert _find(snap, "krill.unknown") == []


def test_metric_key_sorts_labels():
    assert metric_key("m", {"b": "2", "a": "1"}) == "m|a=1,b=2"
    assert metric_key("m", None) == "m"
    assert metric_key("m", {}) == "m"


def test_core_metrics_seeded(store):
    names = [s.name for s in store.snapshot()]
    assert names == [AGENT_HANDOFF_TOTAL, SCHEDULER_TRIGGERS, SESSION_RESUME_TOTAL]
    assert all(s.value == 0 for s in store.snapshot())
    assert store.is_known(ACTIVE_LOOPS)
    assert not store.is_known("krill.other")


def test_gauge_replaces_value(store):
    store.upsert(MetricSample(ACTIVE_LOOPS, MetricType.GAUGE, value=4))
    store.upsert(MetricSample(ACTIVE_LOOPS, MetricType.GAUGE, value=2))
    [gauge] = _find(store.snapshot(), ACTIVE_LOOPS)
    assert gauge.value == 2


def test_labels_separate_samples(store):
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=1, labels={"op": "append"}))
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=5, labels={"op": "get"}))
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=1, labels={"op": "append"}))
    values = {s.labels["op"]: s.value for s in _find(store.snapshot(), MEMORY_OPS_TOTAL)}
    assert values == {"append": 2, "get": 5}


def test_snapshot_is_sorted_and_copied(store):
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=1, labels={"op": "x"}))
    snap = store.snapshot()
    keys = [metric_key(s.name, s.labels) for s in snap]
    assert keys == sorted(keys)
    _find(snap, MEMORY_OPS_TOTAL)[0].labels["op"] = "changed"
    assert _find(store.snapshot(), MEMORY_OPS_TOTAL)[0].labels == {"op": "x"}


def test_input_labels_not_shared(store):
    labels = {"op": "append"}
    store.upsert(MetricSample(MEMORY_OPS_TOTAL, MetricType.COUNTER, value=1, labels=labels))
    labels["op"] = "mutated"
    assert _find(store.snapshot(), MEMORY_OPS_TOTAL)[0].labels == {"op": "append"}