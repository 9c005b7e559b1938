import os

import pytest

from krill.session import AsyncQueueFull, SessionConfig, SessionError, SessionService
from krill.session_models import EventType, MergePolicy, Message, Mode, OpenRequest, Provenance, Status
from krill.session_store import SessionStorageError, session_paths


def _config(path, retention=10, threshold=0, keep=0):
    return SessionConfig(
        path=str(path),
        retention_max_messages=retention,
        summarization_threshold=threshold,
        summarization_keep_recent=keep,
        default_merge_conflict_mode="last-write-wins",
    )


@pytest.fixture
def service(tmp_path):
    svc = SessionService(_config(tmp_path / "sessions.json", retention=6, threshold=4, keep=2))
    yield svc
    svc.shutdown()


def test_lifecycle_resume_checkpoint_and_persistence(tmp_path):
    path = tmp_path / "sessions.json"
    svc = SessionService(_config(path))
    sess = svc.open(
        OpenRequest(tenant="tenant-a", client_id="client-a", thread_id="thread-a", mode=Mode.PERSISTENT),
        Provenance(actor="test"),
    )
    svc.record_message("client-a", "thread-a", Message(role="user", content="hello"), Provenance(actor="test"))
    svc.checkpoint(sess.id, "before restart", Provenance(actor="test"))
    svc.shutdown()

    restarted = SessionService(_config(path))
    try:
        resumed = restarted.resume_by_thread("client-a", "thread-a", Provenance(actor="restart"))
        assert resumed is not None
        assert resumed.checkpoint_ref.startswith("chk-")
        msgs = restarted.restore_messages_by_thread("client-a", "thread-a")
        assert msgs == [Message(role="user", content="hello")]
        closed = restarted.close(resumed.id, Provenance(actor="test"))
        assert closed.status == Status.CLOSED
        assert restarted.resume_by_thread("client-a", "thread-a") is None
    finally:
        restarted.shutdown()


def test_open_returns_existing_open_session(service):
    first = service.open(OpenRequest(client_id="c", thread_id="t"))
    second = service.open(OpenRequest(client_id="c", thread_id="t"))
    assert first.id == second.id
    assert first.mode == Mode.PERSISTENT


def test_summarization_and_retention_policies(service):
    sess = service.open(OpenRequest(client_id="c1", thread_id="t1", mode=Mode.PERSISTENT))
    for i, text in enumerate(["one", "two", "three", "four", "five"]):
        role = "assistant" if i % 2 == 1 else "user"
        service.record_message("c1", "t1", Message(role=role, content=text))
    reloaded = service.resume(sess.id)
    assert reloaded.summary == "user:one | assistant:two"
    assert len(reloaded.messages) <= 3
    msgs = service.restore_messages(sess.id)
    assert msgs[0].role == "system"
    assert msgs[0].content == reloaded.summary


def test_branch_merge_commit_replay_deterministic(service):
    base = service.open(OpenRequest(client_id="c2", thread_id="t2"), Provenance(actor="test"))
    base = service.commit(base.id, {"theme": "blue", "mode": "draft"}, Provenance(actor="base"))
    branch = service.branch(base.id, Provenance(actor="branch"))
    assert branch.thread_id != base.thread_id
    assert branch.base_session_id == base.id
    service.commit(branch.id, {"theme": "green", "extra": "yes"}, Provenance(actor="branch"))
    service.commit(base.id, {"theme": "red"}, Provenance(actor="base"))

    with pytest.raises(SessionError, match="merge conflict: theme"):
        service.merge(base.id, branch.id, MergePolicy.FAIL, Provenance(actor="merge"))

    merged = service.merge(base.id, branch.id, MergePolicy.LAST_WRITE_WINS, Provenance(actor="merge"))
    assert merged.conflicts == ["theme"]
    assert merged.session.context["theme"] == "green"
    assert merged.session.context["extra"] == "yes"
    assert merged.session.context["mode"] == "draft"

    events = service.replay(base.id)
    assert len(events) >= 4
    seqs = [evt.seq for evt in events]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == len(seqs)
    assert events[-1].type == EventType.MERGE


def test_manual_merge_keeps_base_value(service):
    base = service.open(OpenRequest(client_id="c3", thread_id="t3"))
    service.commit(base.id, {"k": "base"})
    branch = service.branch(base.id)
    service.commit(branch.id, {"k": "branch"})
    service.commit(base.id, {"k": "updated"})
    merged = service.merge(base.id, branch.id, MergePolicy.MANUAL)
    assert merged.conflicts == ["k"]
    assert merged.session.context["k"] == "updated"


def test_corrupted_snapshots_fail_to_load(tmp_path):
    (tmp_path / "sessions.snapshots.json").write_text("{bad")
    with pytest.raises(SessionStorageError):
        SessionService(SessionConfig(path=str(tmp_path / "sessions.json")))


def test_validation_and_missing_sessions(service):
    with pytest.raises(SessionError, match="client_id and thread_id are required"):
        service.open(OpenRequest())
    with pytest.raises(SessionError):
        service.resume("missing")
    with pytest.raises(SessionError):
        service.restore_messages("missing")
    with pytest.raises(SessionError):
        service.replay("missing")
    assert service.snapshot("missing") is None
    assert service.restore_messages_by_thread("nobody", "nowhere") is None


def test_record_message_without_open_session_is_ignored(service):
    service.record_message("ghost", "thread", Message(role="user", content="x"))
    assert service.list_sessions() == []


def test_record_message_async_queue_full(tmp_path):
    svc = SessionService(_config(tmp_path / "sessions.json"), async_queue_size=0)
    try:
        with pytest.raises(AsyncQueueFull):
            svc.record_message_async("c1", "t1", Message(role="user", content="x"))
    finally:
        svc.shutdown()


def test_record_message_async_after_shutdown_fails(tmp_path):
    svc = SessionService(_config(tmp_path / "sessions.json"))
    svc.shutdown()
    with pytest.raises(SessionError, match="shut down"):
        svc.record_message_async("c1", "t1", Message(role="user", content="x"))