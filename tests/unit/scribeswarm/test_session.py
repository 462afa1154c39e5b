"""SessionManager driving real worktrees, scripted agents and a recording host."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from scribeswarm.config.schema import OrchestratorConfig
from scribeswarm.coordinator.event_bus import load_events
from scribeswarm.coordinator.session import SessionManager, is_remote_ref, render_summary
from scribeswarm.coordinator.store import SessionStore
from scribeswarm.errors import (
    ConfigurationError,
    DecompositionEmptyError,
    DecompositionError,
    FailureReason,
    WorkspaceError,
)
from scribeswarm.protocol.models import RepoMetadata, SessionStatus, Task, WorkerStatus
from tests.helpers.fixtures import COMMITTING_AGENT, RecordingHost, add_bare_remote, write_agent

FAIL_T2_AGENT = """\
cat > /dev/null
if [ "$SCRIBE_TASK_ID" = "t2" ]; then
  echo "model overloaded" >&2
  exit 1
fi
mkdir -p out
echo "$SCRIBE_TASK_ID" > "out/$SCRIBE_TASK_ID.txt"
git add -A
git commit -q -m "work on $SCRIBE_TASK_ID"
"""


class FixedDecomposer:
    def __init__(self, *ids: str) -> None:
        self.ids = ids
        self.calls = 0

    async def decompose(self, request_text: str, analysis: RepoMetadata) -> list[Task]:
        self.calls += 1
        return [Task(id=task_id, name=f"Task {task_id}", order=i) for i, task_id in enumerate(self.ids)]


def _config(tmp_path: Path, agent_body: str, **run: object) -> OrchestratorConfig:
    cfg = OrchestratorConfig()
    cfg.run.workspace_dir = str(tmp_path / ".scribe")
    cfg.run.max_concurrency = 1
    cfg.run.worker_timeout_seconds = 30
    cfg.run.cancel_grace_seconds = 1
    for key, value in run.items():
        setattr(cfg.run, key, value)
    cfg.agent.backend = "command"
    cfg.agent.command = write_agent(tmp_path / "agent.sh", agent_body)
    return cfg


def _manager(cfg: OrchestratorConfig, *ids: str, host: RecordingHost | None = None) -> SessionManager:
    return SessionManager(cfg, decomposer=FixedDecomposer(*ids), host=host or RecordingHost())


@pytest.fixture
def remote(repo: Path, tmp_path: Path) -> Path:
    return add_bare_remote(repo, tmp_path / "remote.git")


@pytest.mark.asyncio
async def test_two_tasks_serially_to_one_pull_request(repo: Path, tmp_path: Path, remote: Path) -> None:
    host = RecordingHost()
    manager = _manager(_config(tmp_path, COMMITTING_AGENT), "t1", "t2", host=host)
    session = await manager.execute("Add export (issue #3)", str(repo))

    assert session.status is SessionStatus.COMPLETED
    state = manager.load(session.id)
    assert [w.status for w in state.workers.values()] == [WorkerStatus.COMPLETED] * 2
    assert state.integration is not None and state.integration.success
    assert state.integration.artifact_ref == "https://github.com/acme/demo/pull/1"
    assert len(host.created_prs) == 1
    assert host.issue_comments[0][0] == 3

    store = SessionStore.for_session(tmp_path / ".scribe", session.id)
    statuses = [e.data["status"] for e in load_events(store.layout["events"]) if e.event_type == "session.transition"]
    assert statuses == [
        "analyzing",
        "decomposing",
        "preparing_workers",
        "spawning_workers",
        "monitoring",
        "merging",
        "completed",
    ]
    summary = store.layout["summary"].read_text(encoding="utf-8")
    assert "Status: completed" in summary
    assert (store.layout["workers"] / "t1" / "output.log").exists()


@pytest.mark.asyncio
async def test_one_failed_worker_is_partial_failure(repo: Path, tmp_path: Path, remote: Path) -> None:
    host = RecordingHost()
    manager = _manager(_config(tmp_path, FAIL_T2_AGENT, max_concurrency=2), "t1", "t2", host=host)
    session = await manager.execute("Add export", str(repo))

    assert session.status is SessionStatus.PARTIAL_FAILURE
    state = manager.load(session.id)
    assert state.workers["t2"].failure_reason is FailureReason.AGENT_ERROR
    assert state.integration is not None
    assert state.integration.for_task("t1").integrated  # type: ignore[union-attr]
    assert state.integration.for_task("t2") is None
    assert len(host.created_prs) == 1


@pytest.mark.asyncio
async def test_all_workers_failing_fails_session_without_publishing(repo: Path, tmp_path: Path) -> None:
    host = RecordingHost()
    manager = _manager(_config(tmp_path, "cat > /dev/null\nexit 1\n", max_concurrency=2), "t1", "t2", host=host)
    session = await manager.execute("Add export", str(repo))
    assert session.status is SessionStatus.FAILED
    assert session.failure_reason is FailureReason.AGENT_ERROR
    assert host.created_prs == [] and host.pushes == []


@pytest.mark.asyncio
async def test_empty_decomposition_fails_session(repo: Path, tmp_path: Path) -> None:
    manager = _manager(_config(tmp_path, COMMITTING_AGENT))
    with pytest.raises(DecompositionEmptyError):
        await manager.execute("Add export", str(repo))
    assert manager.session is not None
    state = manager.load(manager.session.id)
    assert state.session.status is SessionStatus.FAILED
    assert state.session.failure_reason is FailureReason.DECOMPOSITION_EMPTY


@pytest.mark.asyncio
async def test_missing_base_branch_is_workspace_error(repo: Path, tmp_path: Path) -> None:
    manager = _manager(_config(tmp_path, COMMITTING_AGENT), "t1")
    with pytest.raises(WorkspaceError):
        await manager.execute("Add export", str(repo), base_branch="release")
    assert manager.session is not None
    assert manager.session.status is SessionStatus.FAILED
    assert manager.session.failure_reason is FailureReason.WORKSPACE_ERROR


@pytest.mark.asyncio
async def test_not_a_repository_fails(tmp_path: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()
    manager = _manager(_config(tmp_path, COMMITTING_AGENT), "t1")
    with pytest.raises(WorkspaceError):
        await manager.execute("Add export", str(plain))


def test_create_session_validates_input(repo: Path, tmp_path: Path) -> None:
    manager = _manager(_config(tmp_path, COMMITTING_AGENT), "t1")
    with pytest.raises(ConfigurationError):
        manager.create_session("   ", str(repo))
    with pytest.raises(ConfigurationError):
        manager.create_session("x", str(repo), merge_strategy="octopus")


@pytest.mark.asyncio
async def test_publish_later_is_idempotent_and_keeps_status(repo: Path, tmp_path: Path, remote: Path) -> None:
    host = RecordingHost()
    cfg = _config(tmp_path, COMMITTING_AGENT, auto_publish=False)
    session = await _manager(cfg, "t1", "t2", host=host).execute("Add export", str(repo))
    assert session.status is SessionStatus.COMPLETED
    assert host.created_prs == []

    first = SessionManager(cfg, host=host).publish(session.id)
    second = SessionManager(cfg, host=host).publish(session.id)
    assert first.success and second.success
    assert second.artifact_ref == first.artifact_ref
    assert len(host.created_prs) == 1
    assert len(host.pushes) == 1
    assert SessionManager(cfg).load(session.id).session.status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_federated_session(repo: Path, tmp_path: Path, remote: Path) -> None:
    host = RecordingHost()
    manager = _manager(_config(tmp_path, COMMITTING_AGENT, max_concurrency=3), "t1", "t2", "t3", host=host)
    session = await manager.execute("Split work", str(repo), merge_strategy="federated")
    assert session.status is SessionStatus.COMPLETED
    assert len(host.created_prs) == 3
    assert len(host.issues) == 1


@pytest.mark.asyncio
async def test_cancel_interrupts_running_workers(repo: Path, tmp_path: Path) -> None:
    cfg = _config(tmp_path, "cat > /dev/null\nexec sleep 30\n", max_concurrency=2)
    manager = _manager(cfg, "t1", "t2", "t3")
    run = asyncio.create_task(manager.execute("Add export", str(repo)))

    for _ in range(200):
        await asyncio.sleep(0.05)
        if manager.store is not None and manager.store.exists():
            workers = manager.store.load().workers
            if len(workers) == 2 and all(w.pid for w in workers.values()):
                break
    manager.cancel()
    session = await asyncio.wait_for(run, timeout=15)

    assert session.status is SessionStatus.INTERRUPTED
    state = manager.load(session.id)
    assert {w.status for w in state.workers.values()} == {WorkerStatus.INTERRUPTED}
    assert state.task("t3") is not None and "t3" not in state.workers


@pytest.mark.asyncio
async def test_remote_repository_is_cloned_into_the_session(repo: Path, tmp_path: Path) -> None:
    cfg = _config(tmp_path, COMMITTING_AGENT, auto_publish=False)
    session = await _manager(cfg, "t1").execute("Add export", f"file://{repo}")
    assert session.status is SessionStatus.COMPLETED
    assert Path(session.repo_path) == tmp_path / ".scribe" / "sessions" / session.id / "repo"


def test_is_remote_ref() -> None:
    assert is_remote_ref("https://github.com/a/b.git")
    assert is_remote_ref("git@github.com:a/b.git")
    assert not is_remote_ref("/home/me/project")
    assert not is_remote_ref("../project")


@pytest.mark.asyncio
async def test_latest_session_and_summary(repo: Path, tmp_path: Path) -> None:
    cfg = _config(tmp_path, COMMITTING_AGENT, auto_publish=False)
    manager = _manager(cfg, "t1")
    session = await manager.execute("Add export", str(repo))
    assert SessionManager(cfg).latest_session_id() == session.id
    text = render_summary(manager.load(session.id))
    assert "| t1: Task t1 | 1 | completed | 1 | 1 |" in text


@pytest.mark.asyncio
async def test_configured_task_limits_apply_to_any_decomposer(repo: Path, tmp_path: Path) -> None:
    cfg = _config(tmp_path, COMMITTING_AGENT, auto_publish=False)
    cfg.decomposition.max_tasks = 2
    manager = _manager(cfg, "t1", "t2", "t3")
    session = await manager.execute("Add export", str(repo))
    assert [t.id for t in manager.load(session.id).tasks] == ["t1", "t2"]

    cfg.decomposition.min_tasks = 2
    short = _manager(cfg, "t1")
    with pytest.raises(DecompositionError, match="fewer than min_tasks=2"):
        await short.execute("Add export", str(repo))
    assert short.session is not None
    assert short.session.status is SessionStatus.FAILED
    assert short.session.failure_reason is FailureReason.DECOMPOSITION_EMPTY
