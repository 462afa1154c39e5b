"""Single-task worker supervision.

A supervisor owns one task from workspace creation to a terminal state:

    pending -> initializing -> workspace_created -> running -> completed
                                                           \\-> failed | timed_out
    (interrupted from any non-terminal state)

It persists the worker record after every transition and always unlocks the
worktree on the way out.  Worktrees and logs are never deleted here.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from scribeswarm.adapters.base import AgentAdapter
from scribeswarm.config.schema import AgentConfig
from scribeswarm.coordinator.event_bus import EventBus
from scribeswarm.coordinator.prompt import PromptComposer, commit_message
from scribeswarm.coordinator.store import SessionStore
from scribeswarm.errors import FailureReason, GitCommandError, ScribeError, WorkspaceError
from scribeswarm.protocol.models import (
    TASK_STATUS_FOR_WORKER,
    TASK_TRANSITIONS,
    WORKER_TRANSITIONS,
    RepoMetadata,
    Task,
    TaskStatus,
    Worker,
    WorkerResult,
    WorkerStatus,
    worker_files,
)
from scribeswarm.workspace.worktree import Workspace, WorkspaceIsolator

log = logging.getLogger(__name__)

# Phrases an agent uses when it describes a fix instead of applying it.
_RECOMMENDATION_RE = re.compile(
    r"\b(?:i (?:would )?recommend|you (?:should|could|would|can)|suggested (?:fix|change)|here(?:'s| is) how)",
    re.IGNORECASE,
)


@dataclass(slots=True)
class SupervisorContext:
    session_id: str
    request_text: str
    session_dir: Path
    agent_config: AgentConfig
    worker_timeout: float
    analysis: RepoMetadata = field(default_factory=RepoMetadata)
    all_tasks: list[Task] = field(default_factory=list)
    boundary_check: bool = True


def boundary_violations(changed: list[str], boundaries: tuple[str, ...]) -> list[str]:
    prefixes = [b.strip().removeprefix("./").rstrip("/") for b in boundaries if b.strip()]
    hits: list[str] = []
    for path in changed:
        for prefix in prefixes:
            if path == prefix or path.startswith(prefix + "/"):
                hits.append(path)
                break
    return hits


def only_recommendations(log_path: Path) -> bool:
    try:
        text = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return bool(_RECOMMENDATION_RE.search(text))


class WorkerSupervisor:
    def __init__(
        self,
        isolator: WorkspaceIsolator,
        composer: PromptComposer,
        agent: AgentAdapter,
        store: SessionStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.isolator = isolator
        self.composer = composer
        self.agent = agent
        self.store = store
        self.events = events
        self.task: Task | None = None
        self.worker: Worker | None = None
        self.result: WorkerResult | None = None
        self._started = False

    async def run(self, task: Task, ctx: SupervisorContext) -> WorkerResult:
        if self._started:
            raise RuntimeError("WorkerSupervisor.run() may only be called once")
        self._started = True
        files = worker_files(ctx.session_dir, task.id)
        self.task = task
        self.worker = Worker(task_id=task.id, log_path=str(files["log"]))
        task.transition(TaskStatus.ASSIGNED)
        self._advance(WorkerStatus.INITIALIZING)

        workspace: Workspace | None = None
        try:
            try:
                workspace = self.isolator.acquire(task.id)
                self.isolator.lock(workspace)
            except WorkspaceError as exc:
                return self._finish(WorkerStatus.FAILED, FailureReason.WORKSPACE_ERROR, str(exc))
            self.worker.branch = workspace.branch
            self.worker.workspace_path = str(workspace.path)
            self._advance(WorkerStatus.WORKSPACE_CREATED)

            prompt = self.composer.compose(
                task,
                request_text=ctx.request_text,
                analysis=ctx.analysis,
                other_tasks=ctx.all_tasks,
                workspace_path=workspace.path,
            )
            try:
                self.composer.write(files["prompt"], prompt)
                spec = self.agent.build_spec(
                    ctx.agent_config,
                    task_id=task.id,
                    cwd=workspace.path,
                    log_file=files["log"],
                    env={"SCRIBE_SESSION_ID": ctx.session_id, "SCRIBE_TASK_ID": task.id},
                )
            except (OSError, ValueError) as exc:
                return self._finish(WorkerStatus.FAILED, FailureReason.WORKSPACE_ERROR, str(exc))

            self._advance(WorkerStatus.RUNNING)
            try:
                outcome = await self.agent.run(spec, prompt, ctx.worker_timeout, on_spawn=self._on_spawn)
            except ScribeError as exc:
                return self._finish(WorkerStatus.FAILED, FailureReason.AGENT_ERROR, str(exc))

            self.worker.exit_code = outcome.exit_code
            if outcome.is_timeout:
                return self._finish(
                    WorkerStatus.TIMED_OUT,
                    FailureReason.TIMED_OUT,
                    f"Agent did not finish within {ctx.worker_timeout:.0f}s",
                )
            if outcome.exit_code != 0:
                return self._finish(
                    WorkerStatus.FAILED,
                    FailureReason.AGENT_ERROR,
                    f"Agent exited with code {outcome.exit_code}",
                )
            try:
                return self._verify(task, workspace, files["log"], ctx)
            except (GitCommandError, WorkspaceError) as exc:
                return self._finish(WorkerStatus.FAILED, FailureReason.WORKSPACE_ERROR, str(exc))
        except asyncio.CancelledError:
            if not self.worker.is_terminal:
                self._finish(WorkerStatus.INTERRUPTED, FailureReason.INTERRUPTED, "Worker interrupted")
            raise
        finally:
            if workspace is not None:
                self.isolator.unlock(workspace)

    def record_crash(self, exc: BaseException) -> WorkerResult:
        """Mark the worker failed after an unexpected exception escaped ``run``."""
        if self.worker is None or self.task is None:
            raise RuntimeError("record_crash() called before run()")
        if self.worker.is_terminal and self.result is not None:
            return self.result
        detail = f"{type(exc).__name__}: {exc}"
        if WorkerStatus.FAILED in WORKER_TRANSITIONS[self.worker.status]:
            return self._finish(WorkerStatus.FAILED, FailureReason.INTERNAL_ERROR, detail)
        return self.worker.to_result()

    def _verify(self, task: Task, workspace: Workspace, log_path: Path, ctx: SupervisorContext) -> WorkerResult:
        assert self.worker is not None
        dirty = self.isolator.auto_commit(workspace, commit_message(task))
        if dirty:
            log.info("Task %s: committed %d path(s) the agent left uncommitted", task.id, dirty)
        commits = self.isolator.commits_ahead(workspace)
        changed = self.isolator.changed_files(workspace)
        self.worker.commit_count = commits
        self.worker.modified_file_count = len(changed)

        if commits == 0:
            detail = "No commits or file changes detected"
            if only_recommendations(log_path):
                detail = "Agent only provided recommendations; no changes were made"
            return self._finish(WorkerStatus.FAILED, FailureReason.NO_CHANGES_PRODUCED, detail)

        if ctx.boundary_check and task.boundary_paths:
            violations = boundary_violations(changed, task.boundary_paths)
            if violations:
                self.worker.boundary_violations = violations
                log.warning(
                    "Task %s changed %d path(s) outside its boundaries: %s",
                    task.id, len(violations), ", ".join(violations[:5]),
                )
        return self._finish(WorkerStatus.COMPLETED)

    def _on_spawn(self, pid: int) -> None:
        assert self.worker is not None
        self.worker.pid = pid
        self._persist()

    def _advance(self, status: WorkerStatus) -> None:
        assert self.worker is not None
        self.worker.transition(status)
        self._persist()
        self._emit(status)

    def _finish(
        self,
        status: WorkerStatus,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> WorkerResult:
        assert self.worker is not None and self.task is not None
        self.worker.transition(status, reason=reason, detail=detail)
        task_status = TASK_STATUS_FOR_WORKER[status]
        if task_status in TASK_TRANSITIONS[self.task.status]:
            self.task.transition(task_status)
        self._persist()
        self._emit(status, detail)
        if status == WorkerStatus.COMPLETED:
            log.info(
                "Task %s completed: %d commit(s), %d file(s)",
                self.task.id, self.worker.commit_count, self.worker.modified_file_count,
            )
        else:
            log.warning("Task %s %s: %s", self.task.id, status, detail or reason)
        self.result = self.worker.to_result()
        return self.result

    def _persist(self) -> None:
        if self.store is not None and self.task is not None and self.worker is not None:
            self.store.save_worker(self.task, self.worker)

    def _emit(self, status: WorkerStatus, detail: str = "") -> None:
        if self.events is None or self.worker is None:
            return
        self.events.publish(
            "worker.transition",
            detail,
            task_id=self.worker.task_id,
            status=str(status),
            reason=str(self.worker.failure_reason or ""),
        )
