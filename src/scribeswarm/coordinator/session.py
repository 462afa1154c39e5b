"""Session manager: drives one request from analysis to published result.

    created -> analyzing -> decomposing -> preparing_workers -> spawning_workers
            -> monitoring -> merging -> completed | partial_failure | failed

Any stage may end in ``failed`` or ``interrupted``.  The manager is the only
writer of the session header; supervisors write their own worker entries and
the integrator's report is saved here once integration returns.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from pathlib import Path

from scribeswarm.adapters.base import AgentAdapter
from scribeswarm.adapters.registry import get_adapter
from scribeswarm.config.schema import OrchestratorConfig
from scribeswarm.coordinator.analyzer import RepoAnalyzer
from scribeswarm.coordinator.decomposer import Decomposer, build_decomposer, validate_tasks
from scribeswarm.coordinator.event_bus import EventBus
from scribeswarm.coordinator.prompt import PromptComposer
from scribeswarm.coordinator.scheduler import Scheduler, Supervisor
from scribeswarm.coordinator.store import SessionState, SessionStore, list_sessions
from scribeswarm.coordinator.supervisor import SupervisorContext, WorkerSupervisor
from scribeswarm.errors import (
    ConfigurationError,
    FailureReason,
    ScribeError,
    SessionNotFoundError,
    WorkspaceError,
)
from scribeswarm.hosting.base import RepoHost
from scribeswarm.hosting.registry import get_host
from scribeswarm.integration import integrate
from scribeswarm.integration.base import IntegrationContext
from scribeswarm.logging_setup import bind_session
from scribeswarm.protocol.models import (
    IntegrationReport,
    MergeStrategy,
    RepoMetadata,
    Session,
    SessionStatus,
    Task,
    WorkerResult,
    new_session_id,
)
from scribeswarm.workspace.git import GitRepo
from scribeswarm.workspace.worktree import WorkspaceIsolator

log = logging.getLogger(__name__)

_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:")

SupervisorBuilder = Callable[[WorkspaceIsolator, SessionStore, EventBus], Callable[[Task], Supervisor]]


def is_remote_ref(ref: str) -> bool:
    return "://" in ref or bool(_SCP_LIKE.match(ref))


class SessionManager:
    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        decomposer: Decomposer | None = None,
        agent: AgentAdapter | None = None,
        host: RepoHost | None = None,
        analyzer: RepoAnalyzer | None = None,
        supervisor_builder: SupervisorBuilder | None = None,
    ) -> None:
        self.config = config
        self.workspace_dir = Path(config.run.workspace_dir)
        self.decomposer = decomposer
        self.agent = agent or get_adapter(config.agent.backend, grace_seconds=config.run.cancel_grace_seconds)
        self.host = host
        self.analyzer = analyzer or RepoAnalyzer()
        self.composer = PromptComposer()
        self.supervisor_builder = supervisor_builder or self._default_supervisors
        self.session: Session | None = None
        self.store: SessionStore | None = None
        self.events: EventBus | None = None
        self.tasks: list[Task] = []
        self.results: list[WorkerResult] = []
        self.report: IntegrationReport | None = None
        self._scheduler: Scheduler | None = None
        self._main_task: asyncio.Task[object] | None = None
        self._cancel_requested = False

    # -- public API --------------------------------------------------------

    def create_session(
        self,
        request_text: str,
        repository_ref: str,
        *,
        base_branch: str | None = None,
        merge_strategy: str | None = None,
        max_concurrency: int | None = None,
        worker_timeout: float | None = None,
    ) -> Session:
        if not request_text.strip():
            raise ConfigurationError("Request text must not be empty")
        run = self.config.run
        try:
            session = Session(
                id=new_session_id(),
                request_text=request_text,
                repository_ref=repository_ref,
                base_branch=base_branch or run.base_branch,
                merge_strategy=MergeStrategy(merge_strategy or run.merge_strategy),
                max_concurrency=int(max_concurrency or run.max_concurrency),
                worker_timeout=float(worker_timeout or run.worker_timeout_seconds),
            )
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        self._attach(session)
        assert self.store is not None
        self.store.create(session)
        log.info("Created session %s for %s", session.id, repository_ref)
        return session

    async def execute(self, request_text: str, repository_ref: str, **overrides: object) -> Session:
        self.create_session(request_text, repository_ref, **overrides)  # type: ignore[arg-type]
        return await self.run()

    async def run(self) -> Session:
        if self.session is None or self.store is None:
            raise RuntimeError("create_session() must be called before run()")
        session = self.session
        self._main_task = asyncio.current_task()
        try:
            await self._pipeline(session)
        except asyncio.CancelledError:
            if not session.is_terminal:
                self._transition(SessionStatus.INTERRUPTED, reason=FailureReason.INTERRUPTED, detail="Session interrupted")
            if not self._cancel_requested:
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
        except ScribeError as exc:
            if not session.is_terminal:
                self._transition(
                    SessionStatus.FAILED,
                    reason=exc.reason or FailureReason.INTERNAL_ERROR,
                    detail=str(exc),
                )
            raise
        except Exception as exc:
            if not session.is_terminal:
                self._transition(
                    SessionStatus.FAILED,
                    reason=FailureReason.INTERNAL_ERROR,
                    detail=f"{type(exc).__name__}: {exc}",
                )
            raise
        finally:
            self._main_task = None
            self._write_summary()
        return session

    def cancel(self) -> None:
        """Interrupt the running session (signal-handler safe)."""
        if self._cancel_requested:
            return
        self._cancel_requested = True
        log.warning("Cancellation requested")
        if self._scheduler is not None:
            self._scheduler.cancel()
        elif self._main_task is not None:
            self._main_task.cancel()

    def load(self, session_id: str) -> SessionState:
        store = SessionStore.for_session(self.workspace_dir, session_id)
        if not store.exists():
            raise SessionNotFoundError(session_id)
        return store.load()

    def latest_session_id(self) -> str:
        sessions = list_sessions(self.workspace_dir)
        if not sessions:
            raise SessionNotFoundError("(latest)")
        return sessions[-1]

    def publish(self, session_id: str, strategy: str | None = None) -> IntegrationReport:
        """Re-run integration for a finished session; safe to repeat."""
        state = self.load(session_id)
        self._attach(state.session)
        if not state.session.repo_path:
            raise WorkspaceError(f"Session {session_id} has no prepared repository")
        chosen = MergeStrategy(strategy or state.session.merge_strategy)
        previous = state.integration if state.integration and state.integration.strategy == chosen else None
        report = self._integrate(state, chosen, previous)
        self._write_summary()
        return report

    def cleanup(self, session_id: str, *, delete_branches: bool = False) -> list[Path]:
        state = self.load(session_id)
        store = SessionStore.for_session(self.workspace_dir, session_id)
        isolator = WorkspaceIsolator(
            GitRepo(state.session.repo_path),
            store.layout["worktrees"],
            session_id,
            state.session.base_branch,
            remote=self.config.publish.remote,
        )
        return isolator.cleanup(delete_branches=delete_branches)

    # -- pipeline ----------------------------------------------------------

    async def _pipeline(self, session: Session) -> None:
        assert self.store is not None and self.events is not None
        self._transition(SessionStatus.ANALYZING)
        repo = self._prepare_repository(session)
        analysis = self.analyzer.analyze(repo.root)
        session.analysis = analysis.to_dict()
        self.store.save_session(session)

        self._transition(SessionStatus.DECOMPOSING)
        limits = self.config.decomposition
        decomposer = self.decomposer or build_decomposer(
            limits, self.config.agent, cwd=repo.root, grace_seconds=self.config.run.cancel_grace_seconds
        )
        self.tasks = validate_tasks(
            await decomposer.decompose(session.request_text, analysis),
            min_tasks=limits.min_tasks,
            max_tasks=limits.max_tasks,
        )
        self.store.save_tasks(self.tasks)
        self.events.publish("session.decomposed", task_ids=[t.id for t in self.tasks])
        log.info("Decomposed into %d task(s): %s", len(self.tasks), ", ".join(t.id for t in self.tasks))

        self._transition(SessionStatus.PREPARING_WORKERS)
        isolator = WorkspaceIsolator(
            repo,
            self.store.layout["worktrees"],
            session.id,
            session.base_branch,
            remote=self.config.publish.remote,
        )
        try:
            base_ref = isolator.base_ref
        except ScribeError as exc:
            raise WorkspaceError(f"Base branch {session.base_branch!r} not found: {exc}") from exc
        log.debug("Workers branch from %s", base_ref)
        ctx = SupervisorContext(
            session_id=session.id,
            request_text=session.request_text,
            session_dir=self.store.session_dir,
            agent_config=self.config.agent,
            worker_timeout=session.worker_timeout,
            analysis=RepoMetadata.from_dict(session.analysis),
            all_tasks=list(self.tasks),
            boundary_check=self.config.publish.boundary_check,
        )
        self._scheduler = Scheduler(
            self.supervisor_builder(isolator, self.store, self.events),
            ctx,
            session.max_concurrency,
            on_drained=lambda: self._transition(SessionStatus.MONITORING),
        )

        self._transition(SessionStatus.SPAWNING_WORKERS)
        if self._cancel_requested:
            self._scheduler.cancel()
        self.results = await self._scheduler.run(self.tasks)
        if self._scheduler.interrupted:
            self._transition(SessionStatus.INTERRUPTED, reason=FailureReason.INTERRUPTED, detail="Session interrupted")
            return
        if session.status == SessionStatus.SPAWNING_WORKERS:
            self._transition(SessionStatus.MONITORING)

        completed = [r for r in self.results if r.succeeded]
        if not completed:
            reasons = {r.failure_reason for r in self.results}
            self._transition(
                SessionStatus.FAILED,
                reason=reasons.pop() if len(reasons) == 1 else None,
                detail="No task completed",
            )
            return
        if not self.config.run.auto_publish:
            final = SessionStatus.COMPLETED if len(completed) == len(self.tasks) else SessionStatus.PARTIAL_FAILURE
            self._transition(final, detail=f"{len(completed)}/{len(self.tasks)} task(s) completed; publishing skipped")
            return

        self._transition(SessionStatus.MERGING)
        state = self.store.load()
        previous = state.integration if state.integration and state.integration.strategy == session.merge_strategy else None
        report = self._integrate(state, session.merge_strategy, previous)
        self._finalize(report)

    def _finalize(self, report: IntegrationReport) -> None:
        integrated = [r for r in report.results if r.task_id is not None and r.integrated]
        total = len(self.tasks)
        if not integrated:
            failed = next((r for r in report.results if r.failure_reason is not None), None)
            self._transition(
                SessionStatus.FAILED,
                reason=failed.failure_reason if failed else None,
                detail=failed.detail if failed else "Nothing was integrated",
            )
        elif report.success and len(integrated) == total:
            self._transition(SessionStatus.COMPLETED, detail=report.artifact_ref)
        else:
            self._transition(
                SessionStatus.PARTIAL_FAILURE,
                detail=f"{len(integrated)}/{total} task(s) integrated",
            )

    def _integrate(
        self,
        state: SessionState,
        strategy: MergeStrategy,
        previous: IntegrationReport | None,
    ) -> IntegrationReport:
        assert self.store is not None and self.events is not None
        publish = self.config.publish
        ctx = IntegrationContext(
            session_id=state.session.id,
            request_text=state.session.request_text,
            repo=GitRepo(state.session.repo_path),
            base_branch=state.session.base_branch,
            session_dir=self.store.session_dir,
            host=self.host or get_host(publish.host, remote=publish.remote),
            tasks=state.tasks,
            workers=state.workers,
            previous=previous,
            remote=publish.remote,
            draft=publish.draft,
            link_issues=publish.link_issues,
        )
        report = integrate(strategy, ctx)
        self.report = report
        self.store.save_integration(report)
        for result in report.results:
            self.events.publish(
                "integration.result",
                result.detail,
                task_id=result.task_id or "",
                outcome=str(result.outcome),
                ref=result.published_ref,
            )
        log.info(
            "Integration (%s) %s: %s",
            strategy, "succeeded" if report.success else "failed", report.artifact_ref or "-",
        )
        return report

    def _prepare_repository(self, session: Session) -> GitRepo:
        assert self.store is not None
        ref = session.repository_ref
        if is_remote_ref(ref):
            dest = self.store.layout["repo"]
            if GitRepo(dest).is_repo():
                repo = GitRepo(dest)
                repo.fetch(self.config.publish.remote)
            else:
                log.info("Cloning %s into %s", ref, dest)
                repo = GitRepo.clone(ref, dest)
        else:
            repo = GitRepo(Path(ref).expanduser().resolve())
            if not repo.is_repo():
                raise WorkspaceError(f"{repo.root} is not a git repository")
        session.repo_path = str(repo.root)
        self.store.save_session(session)
        return repo

    # -- helpers -----------------------------------------------------------

    def _attach(self, session: Session) -> None:
        self.session = session
        self.store = SessionStore.for_session(self.workspace_dir, session.id)
        self.events = EventBus(self.store.layout["events"])
        bind_session(session.id)

    def _default_supervisors(
        self,
        isolator: WorkspaceIsolator,
        store: SessionStore,
        events: EventBus,
    ) -> Callable[[Task], Supervisor]:
        def factory(task: Task) -> Supervisor:
            return WorkerSupervisor(isolator, self.composer, self.agent, store, events)

        return factory

    def _transition(
        self,
        status: SessionStatus,
        *,
        reason: FailureReason | None = None,
        detail: str = "",
    ) -> None:
        assert self.session is not None and self.store is not None and self.events is not None
        previous = self.session.status
        self.session.transition(status, reason=reason, detail=detail)
        self.store.save_session(self.session)
        self.events.publish(
            "session.transition",
            detail,
            previous=str(previous),
            status=str(status),
            reason=str(reason or ""),
        )
        log.info("Session %s: %s -> %s", self.session.id, previous, status)

    def _write_summary(self) -> None:
        if self.store is None or not self.store.exists():
            return
        try:
            state = self.store.load()
            self.store.layout["summary"].write_text(render_summary(state), encoding="utf-8")
        except (OSError, ScribeError) as exc:
            log.warning("Could not write session summary: %s", exc)


def render_summary(state: SessionState) -> str:
    session = state.session
    lines = [
        f"# Session {session.id}",
        "",
        f"- Status: {session.status}",
        f"- Repository: {session.repository_ref}",
        f"- Base branch: {session.base_branch}",
        f"- Strategy: {session.merge_strategy}",
        f"- Created: {session.created_at}",
    ]
    if session.failure_reason or session.failure_detail:
        lines.append(f"- Detail: {session.failure_reason or ''} {session.failure_detail}".rstrip())
    lines += ["", "## Request", "", session.request_text.strip(), "", "## Tasks", ""]
    lines.append("| Task | Priority | Status | Commits | Files | Reason |")
    lines.append("|------|----------|--------|---------|-------|--------|")
    for task in state.tasks:
        worker = state.workers.get(task.id)
        lines.append(
            f"| {task.id}: {task.name} | {task.priority} | {worker.status if worker else task.status} "
            f"| {worker.commit_count if worker else 0} | {worker.modified_file_count if worker else 0} "
            f"| {(worker.failure_reason or '') if worker else ''} |"
        )
    if state.integration is not None:
        report = state.integration
        lines += ["", "## Integration", "", f"- Strategy: {report.strategy}", f"- Success: {report.success}"]
        if report.artifact_ref:
            lines.append(f"- Artifact: {report.artifact_ref}")
        for result in report.results:
            label = result.task_id or "(tracking)"
            ref = f" {result.published_ref}" if result.published_ref else ""
            lines.append(f"- {label}: {result.outcome}{ref}")
    return "\n".join(lines) + "\n"
