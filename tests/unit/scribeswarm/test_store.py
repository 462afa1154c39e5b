from __future__ import annotations

import json
from pathlib import Path

import pytest

from scribeswarm.coordinator.store import SessionStore, list_sessions
from scribeswarm.errors import SessionNotFoundError
from scribeswarm.protocol.io import append_jsonl, read_json, read_jsonl, write_json_atomic
from scribeswarm.protocol.models import (
    IntegrationReport,
    MergeOutcome,
    MergeResult,
    MergeStrategy,
    Session,
    SessionStatus,
    Task,
    Worker,
    WorkerStatus,
)


def test_write_json_atomic_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "state.json"
    write_json_atomic(target, {"a": 1})
    write_json_atomic(target, {"a": 2})
    assert read_json(target) == {"a": 2}
    assert [p.name for p in target.parent.iterdir()] == ["state.json"]


def test_read_json_default_on_corrupt_file(tmp_path: Path) -> None:
    target = tmp_path / "state.json"
    target.write_text("{not json", encoding="utf-8")
    assert read_json(target, default={}) == {}


def test_read_jsonl_skips_truncated_lines(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    append_jsonl(path, {"n": 1})
    with path.open("a", encoding="utf-8") as fh:
        fh.write('{"n": 2\n')
    append_jsonl(path, {"n": 3})
    assert [row["n"] for row in read_jsonl(path)] == [1, 3]
    assert [row["n"] for row in read_jsonl(path, limit=1)] == [3]


def _store(tmp_path: Path, session_id: str = "20260101_000000_aaaaaaaa") -> tuple[SessionStore, Session]:
    store = SessionStore.for_session(tmp_path / ".scribe", session_id)
    session = Session(id=session_id, request_text="Add search", repository_ref=str(tmp_path))
    store.create(session)
    return store, session


def test_store_round_trip(tmp_path: Path) -> None:
    store, session = _store(tmp_path)
    tasks = [Task(id="t2", name="b", priority=2, order=1), Task(id="t1", name="a", priority=1, order=0)]
    store.save_tasks(tasks)

    worker = Worker(task_id="t1", branch="scribe/x/t1")
    worker.transition(WorkerStatus.INITIALIZING)
    store.save_worker(tasks[1], worker)

    session.transition(SessionStatus.ANALYZING)
    store.save_session(session)
    store.save_integration(
        IntegrationReport(
            strategy=MergeStrategy.SINGLE_PR,
            results=[MergeResult(task_id="t1", outcome=MergeOutcome.MERGED)],
        )
    )

    state = store.load()
    assert state.session.status is SessionStatus.ANALYZING
    assert [t.id for t in state.tasks] == ["t1", "t2"]
    assert state.workers["t1"].status is WorkerStatus.INITIALIZING
    assert "t2" not in state.workers
    assert state.integration is not None and state.integration.results[0].task_id == "t1"
    assert [r.task_id for r in state.worker_results()] == ["t1"]


def test_saving_tasks_keeps_existing_worker_records(tmp_path: Path) -> None:
    store, _ = _store(tmp_path)
    task = Task(id="t1", name="a")
    store.save_worker(task, Worker(task_id="t1"))
    store.save_tasks([task])
    doc = json.loads(store.state_path.read_text(encoding="utf-8"))
    assert doc["tasks"]["t1"]["worker"]["task_id"] == "t1"
    assert doc["schema_version"] == 1


def test_load_missing_session_raises(tmp_path: Path) -> None:
    store = SessionStore.for_session(tmp_path, "nope")
    with pytest.raises(SessionNotFoundError):
        store.load()
    with pytest.raises(SessionNotFoundError):
        store.save_session(Session(id="nope", request_text="x", repository_ref="."))


def test_list_sessions_oldest_first(tmp_path: Path) -> None:
    _store(tmp_path, "20260102_000000_bbbbbbbb")
    _store(tmp_path, "20260101_000000_aaaaaaaa")
    (tmp_path / ".scribe" / "sessions" / "stray").mkdir()
    assert list_sessions(tmp_path / ".scribe") == ["20260101_000000_aaaaaaaa", "20260102_000000_bbbbbbbb"]
