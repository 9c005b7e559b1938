from collections import defaultdict

import pytest

from krill.memory_store import MemoryStore, wrap_memory_store
from krill.session import SessionConfig, SessionService
from krill.session_models import Message, Mode, OpenRequest


class RamStore:
    def __init__(self):
        self.threads = defaultdict(list)

    def append(self, client_id, thread_id, message):
        self.threads[(client_id, thread_id)].append(message)

    def append_batch(self, client_id, thread_id, messages):
        self.threads[(client_id, thread_id)].extend(messages)

    def get(self, client_id, thread_id, window):
        return list(self.threads[(client_id, thread_id)][-window:])

    def snapshot(self, client_id, thread_id):
        return tuple(self.threads[(client_id, thread_id)])

    def restore(self, client_id, thread_id, snapshot):
        self.threads[(client_id, thread_id)] = list(snapshot)

    def trim(self, client_id, thread_id, keep):
        self.threads[(client_id, thread_id)] = self.threads[(client_id, thread_id)][-keep:]

    def clear(self, client_id, thread_id):
        self.threads.pop((client_id, thread_id), None)


class ClosableStore(RamStore):
    def __init__(self):
        super().__init__()
        self.closed = False

    def close(self):
        self.closed = True


class FailingStore(RamStore):
    def append(self, client_id, thread_id, message):
        raise OSError("backend down")

    def append_batch(self, client_id, thread_id, messages):
        raise OSError("backend down")


@pytest.fixture
def service(tmp_path):
    svc = SessionService(
        SessionConfig(
            path=str(tmp_path / "sessions.json"),
            retention_max_messages=10,
            default_merge_conflict_mode="last-write-wins",
        )
    )
    yield svc
    svc.shutdown()


def test_wrap_memory_store_and_hydrate(service):
    service.open(OpenRequest(client_id="c1", thread_id="t1", mode=Mode.PERSISTENT))
    base = RamStore()
    wrapped = wrap_memory_store(base, service)
    assert isinstance(wrapped, MemoryStore)

    wrapped.append("c1", "t1", Message(role="user", content="hello"))
    service.flush()
    assert len(wrapped.get("c1", "t1", 10)) == 1
    assert len(service.restore_messages_by_thread("c1", "t1")) == 1

    wrapped.hydrate("c1", "t1", [Message(role="assistant", content="restored")])
    assert len(wrapped.get("c1", "t1", 10)) == 2
    service.flush()
    assert len(service.restore_messages_by_thread("c1", "t1")) == 1

    wrapped.clear("c1", "t1")
    assert wrapped.get("c1", "t1", 10) == []


def test_append_batch_snapshot_restore_trim_close(service):
    service.open(OpenRequest(client_id="c2", thread_id="t2", mode=Mode.PERSISTENT))
    base = ClosableStore()
    wrapped = wrap_memory_store(base, service)
    wrapped.append_batch(
        "c2", "t2", [Message(role="user", content="one"), Message(role="assistant", content="two")]
    )
    service.flush()
    assert [m.content for m in service.restore_messages_by_thread("c2", "t2")] == ["one", "two"]

    snap = wrapped.snapshot("c2", "t2")
    assert len(snap) == 2
    wrapped.trim("c2", "t2", 1)
    assert [m.content for m in wrapped.get("c2", "t2", 10)] == ["two"]
    wrapped.restore("c2", "t2", snap)
    assert len(wrapped.get("c2", "t2", 10)) == 2

    wrapped.close()
    assert base.closed is True


def test_failed_base_append_is_not_recorded(service):
    service.open(OpenRequest(client_id="c3", thread_id="t3"))
    wrapped = wrap_memory_store(FailingStore(), service)
    with pytest.raises(OSError, match="backend down"):
        wrapped.append("c3", "t3", Message(role="user", content="lost"))
    service.flush()
    assert service.restore_messages_by_thread("c3", "t3") == []


def test_hydrate_ignores_backend_failure(service):
    base = FailingStore()
    wrapped = wrap_memory_store(base, service)
    wrapped.hydrate("c4", "t4", [Message(role="user", content="x")])
    assert base.get("c4", "t4", 10) == []


def test_wrap_memory_store_nil_inputs(service):
    assert wrap_memory_store(None, None) is None
    base = RamStore()
    assert wrap_memory_store(base, None) is base
    assert wrap_memory_store(None, service) is None