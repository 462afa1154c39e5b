"""Typed records for sessions, tasks, workers and integration results.

Every record round-trips through ``to_dict`` / ``from_dict`` so it can live in
``session.json``.  Status fields only move through ``transition()``, which
checks the edge against the tables below.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from scribeswarm.errors import FailureReason, InvalidTransitionError


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_session_id(now: datetime | None = None) -> str:
    """Time-ordered session id, e.g. ``20260101_120000_1a2b3c4d``."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{stamp}_{uuid.uuid4().hex[:8]}"


class SessionStatus(StrEnum):
    CREATED = "created"
    ANALYZING = "analyzing"
    DECOMPOSING = "decomposing"
    PREPARING_WORKERS = "preparing_workers"
    SPAWNING_WORKERS = "spawning_workers"
    MONITORING = "monitoring"
    MERGING = "merging"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class MergeStrategy(StrEnum):
    SINGLE_PR = "single_pr"
    FEDERATED = "federated"


class TaskStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


class WorkerStatus(StrEnum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    WORKSPACE_CREATED = "workspace_created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


class MergeOutcome(StrEnum):
    MERGED = "merged"
    CONFLICT_RESOLVED = "conflict_resolved"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    SKIPPED_NO_COMMITS = "skipped_no_commits"
    FAILED = "failed"


_S = SessionStatus
SESSION_TERMINAL = frozenset({_S.COMPLETED, _S.PARTIAL_FAILURE, _S.FAILED, _S.INTERRUPTED})
_SESSION_ABORT = frozenset({_S.FAILED, _S.INTERRUPTED})
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    _S.CREATED: frozenset({_S.ANALYZING}) | _SESSION_ABORT,
    _S.ANALYZING: frozenset({_S.DECOMPOSING}) | _SESSION_ABORT,
    _S.DECOMPOSING: frozenset({_S.PREPARING_WORKERS}) | _SESSION_ABORT,
    _S.PREPARING_WORKERS: frozenset({_S.SPAWNING_WORKERS}) | _SESSION_ABORT,
    _S.SPAWNING_WORKERS: frozenset({_S.MONITORING}) | _SESSION_ABORT,
    _S.MONITORING: frozenset({_S.MERGING, _S.COMPLETED, _S.PARTIAL_FAILURE}) | _SESSION_ABORT,
    _S.MERGING: frozenset({_S.COMPLETED, _S.PARTIAL_FAILURE}) | _SESSION_ABORT,
    _S.COMPLETED: frozenset(),
    _S.PARTIAL_FAILURE: frozenset(),
    _S.FAILED: frozenset(),
    _S.INTERRUPTED: frozenset(),
}

_W = WorkerStatus
WORKER_TERMINAL = frozenset({_W.COMPLETED, _W.FAILED, _W.TIMED_OUT, _W.INTERRUPTED})
WORKER_TRANSITIONS: dict[WorkerStatus, frozenset[WorkerStatus]] = {
    _W.PENDING: frozenset({_W.INITIALIZING, _W.FAILED, _W.INTERRUPTED}),
    _W.INITIALIZING: frozenset({_W.WORKSPACE_CREATED, _W.FAILED, _W.INTERRUPTED}),
    _W.WORKSPACE_CREATED: frozenset({_W.RUNNING, _W.FAILED, _W.INTERRUPTED}),
    _W.RUNNING: frozenset({_W.COMPLETED, _W.FAILED, _W.TIMED_OUT, _W.INTERRUPTED}),
    _W.COMPLETED: frozenset(),
    _W.FAILED: frozenset(),
    _W.TIMED_OUT: frozenset(),
    _W.INTERRUPTED: frozenset(),
}

_T = TaskStatus
TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    _T.PENDING: frozenset({_T.ASSIGNED, _T.FAILED, _T.INTERRUPTED}),
    _T.ASSIGNED: frozenset({_T.COMPLETED, _T.FAILED, _T.TIMED_OUT, _T.INTERRUPTED}),
    _T.COMPLETED: frozenset(),
    _T.FAILED: frozenset(),
    _T.TIMED_OUT: frozenset(),
    _T.INTERRUPTED: frozenset(),
}

# Worker terminal state -> task terminal state.
TASK_STATUS_FOR_WORKER: dict[WorkerStatus, TaskStatus] = {
    _W.COMPLETED: _T.COMPLETED,
    _W.FAILED: _T.FAILED,
    _W.TIMED_OUT: _T.TIMED_OUT,
    _W.INTERRUPTED: _T.INTERRUPTED,
}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}


def _reason(value: Any) -> FailureReason | None:
    if value in (None, ""):
        return None
    return FailureReason(value)


@dataclass(slots=True)
class Task:
    id: str
    name: str
    description: str = ""
    scope_paths: tuple[str, ...] = ()
    boundary_paths: tuple[str, ...] = ()
    priority: int = 1
    order: int = 0
    status: TaskStatus = TaskStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.scope_paths = tuple(self.scope_paths)
        self.boundary_paths = tuple(self.boundary_paths)
        self.status = TaskStatus(self.status)

    @property
    def sort_key(self) -> tuple[int, int]:
        return (self.priority, self.order)

    def transition(self, target: TaskStatus) -> None:
        target = TaskStatus(target)
        if target not in TASK_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"task {self.id}", self.status, target)
        self.status = target

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scope_paths"] = list(self.scope_paths)
        data["boundary_paths"] = list(self.boundary_paths)
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Task:
        return cls(**_pick(raw, cls))


@dataclass(slots=True)
class WorkerResult:
    task_id: str
    status: WorkerStatus
    commit_count: int = 0
    modified_file_count: int = 0
    failure_reason: FailureReason | None = None
    failure_detail: str = ""
    branch: str = ""
    workspace_path: str = ""
    log_path: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == WorkerStatus.COMPLETED


@dataclass(slots=True)
class Worker:
    task_id: str
    branch: str = ""
    workspace_path: str = ""
    status: WorkerStatus = WorkerStatus.PENDING
    pid: int | None = None
    exit_code: int | None = None
    started_at: str | None = None
    completed_at: str | None = None
    commit_count: int = 0
    modified_file_count: int = 0
    failure_reason: FailureReason | None = None
    failure_detail: str = ""
    log_path: str = ""
    boundary_violations: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.status = WorkerStatus(self.status)
        self.failure_reason = _reason(self.failure_reason)

    @property
    def is_terminal(self) -> bool:
        return self.status in WORKER_TERMINAL

    def transition(
        self,
        target: WorkerStatus,
        *,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> None:
        target = WorkerStatus(target)
        if target not in WORKER_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"worker {self.task_id}", self.status, target)
        self.status = target
        if target == WorkerStatus.RUNNING:
            self.started_at = utc_now_iso()
        if target in WORKER_TERMINAL:
            self.completed_at = utc_now_iso()
        if reason is not None:
            self.failure_reason = reason
        if detail:
            self.failure_detail = detail

    def to_result(self) -> WorkerResult:
        return WorkerResult(
            task_id=self.task_id,
            status=self.status,
            commit_count=self.commit_count,
            modified_file_count=self.modified_file_count,
            failure_reason=self.failure_reason,
            failure_detail=self.failure_detail,
            branch=self.branch,
            workspace_path=self.workspace_path,
            log_path=self.log_path,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Worker:
        return cls(**_pick(raw, cls))


@dataclass(slots=True)
class Session:
    id: str
    request_text: str
    repository_ref: str
    base_branch: str = "main"
    merge_strategy: MergeStrategy = MergeStrategy.SINGLE_PR
    max_concurrency: int = 3
    worker_timeout: float = 1800.0
    status: SessionStatus = SessionStatus.CREATED
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    repo_path: str = ""
    failure_reason: FailureReason | None = None
    failure_detail: str = ""
    analysis: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.status = SessionStatus(self.status)
        self.merge_strategy = MergeStrategy(self.merge_strategy)
        self.failure_reason = _reason(self.failure_reason)
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @property
    def is_terminal(self) -> bool:
        return self.status in SESSION_TERMINAL

    def transition(
        self,
        target: SessionStatus,
        *,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> None:
        target = SessionStatus(target)
        if target not in SESSION_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"session {self.id}", self.status, target)
        self.status = target
        self.updated_at = utc_now_iso()
        if reason is not None:
            self.failure_reason = reason
        if detail:
            self.failure_detail = detail

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Session:
        return cls(**_pick(raw, cls))


@dataclass(slots=True)
class MergeResult:
    task_id: str | None
    outcome: MergeOutcome
    published_ref: str = ""
    failure_reason: FailureReason | None = None
    detail: str = ""
    commits: int = 0

    def __post_init__(self) -> None:
        self.outcome = MergeOutcome(self.outcome)
        self.failure_reason = _reason(self.failure_reason)

    @property
    def integrated(self) -> bool:
        return self.outcome in (MergeOutcome.MERGED, MergeOutcome.CONFLICT_RESOLVED)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MergeResult:
        return cls(**_pick(raw, cls))


@dataclass(slots=True)
class IntegrationReport:
    strategy: MergeStrategy
    results: list[MergeResult] = field(default_factory=list)
    branch: str = ""
    tree: str = ""
    artifact_ref: str = ""
    tracking_ref: str = ""
    pushed: bool = False
    reused_existing: bool = False
    success: bool = False
    finished_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self) -> None:
        self.strategy = MergeStrategy(self.strategy)

    def for_task(self, task_id: str) -> MergeResult | None:
        for result in self.results:
            if result.task_id == task_id:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["results"] = [r.to_dict() for r in self.results]
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> IntegrationReport:
        picked = _pick(raw, cls)
        picked["results"] = [MergeResult.from_dict(r) for r in raw.get("results", [])]
        return cls(**picked)


@dataclass(slots=True)
class RepoMetadata:
    type: str = "unknown"
    frameworks: list[str] = field(default_factory=list)
    test_framework: str = "unknown"
    remote: str = ""
    branch: str = ""
    commit_count: int = 0
    directories: dict[str, str] = field(default_factory=dict)
    config_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RepoMetadata:
        return cls(**_pick(raw or {}, cls))


def session_layout(session_dir: Path) -> dict[str, Path]:
    return {
        "root": session_dir,
        "state": session_dir / "session.json",
        "lock": session_dir / "session.lock",
        "events": session_dir / "events.jsonl",
        "repo": session_dir / "repo",
        "workers": session_dir / "workers",
        "worktrees": session_dir / "worktrees",
        "summary": session_dir / "summary.md",
    }


def worker_files(session_dir: Path, task_id: str) -> dict[str, Path]:
    root = session_dir / "workers" / task_id
    return {
        "root": root,
        "prompt": root / "prompt.txt",
        "log": root / "output.log",
    }
