"""SinglePR integration: replay every completed task onto one branch.

Tasks are replayed in priority order, one commit at a time, onto
``scribe/<session>/integration`` which is rebuilt from the base branch on every
run.  Cherry-pick conflicts are resolved in favour of the replayed commit: a
conflicted path takes the commit's version, or is removed when the commit
deleted it.  A task whose replay still cannot complete is rolled back to the
head before the task started and reported as ``conflict_unresolved``.
"""

from __future__ import annotations

import logging
import shutil

from scribeswarm.errors import (
    FailureReason,
    GitCommandError,
    PublishError,
    PushRejectedError,
    WorkspaceMissingError,
)
from scribeswarm.integration.base import (
    IntegrationContext,
    find_or_create_pr,
    headline,
    linked_issue,
    sync_branch,
)
from scribeswarm.protocol.models import (
    IntegrationReport,
    MergeOutcome,
    MergeResult,
    MergeStrategy,
    Task,
)
from scribeswarm.workspace.git import GitRepo
from scribeswarm.workspace.worktree import INTEGRATION_DIR, WorkspaceIsolator, integration_branch_name

log = logging.getLogger(__name__)


class ReplayFailed(Exception):
    """A commit could not be applied even after conflict resolution."""


class SinglePRIntegrator:
    strategy = MergeStrategy.SINGLE_PR

    def integrate(self, ctx: IntegrationContext) -> IntegrationReport:
        branch = integration_branch_name(ctx.session_id)
        report = IntegrationReport(strategy=self.strategy, branch=branch)
        isolator = ctx.isolator()
        git = self._prepare(ctx, isolator, branch)

        for task in ctx.completed_tasks():
            result = self._replay_task(git, isolator, task)
            report.results.append(result)
            log.info("Integration of %s: %s %s", task.id, result.outcome, result.detail)

        merged = [r for r in report.results if r.integrated]
        if not merged:
            log.error("No task could be integrated; discarding %s", branch)
            self._discard(ctx, branch)
            return report

        report.tree = git.tree_of("HEAD") or ""
        try:
            report.pushed = sync_branch(ctx.host, git, branch, report.tree)
        except PushRejectedError as exc:
            self._mark(merged, FailureReason.PUSH_REJECTED, str(exc))
            return report

        previous = ctx.previous
        recorded = ""
        if previous and previous.artifact_ref and previous.tree == report.tree:
            recorded = previous.artifact_ref
        try:
            pr, reused = find_or_create_pr(
                ctx.host,
                git,
                base=ctx.base_branch,
                head=branch,
                title=f"Implement: {headline(ctx.request_text)}",
                body=self._body(ctx, merged),
                draft=ctx.draft,
                recorded_ref=recorded,
            )
        except PublishError as exc:
            self._mark(merged, FailureReason.PUBLISH_FAILED, str(exc))
            return report

        report.artifact_ref = pr.ref
        report.reused_existing = reused
        report.success = True
        for result in merged:
            result.published_ref = pr.ref
        if not reused:
            self._link_issue(ctx, git, pr.ref)
        return report

    # -- branch preparation ------------------------------------------------

    def _prepare(self, ctx: IntegrationContext, isolator: WorkspaceIsolator, branch: str) -> GitRepo:
        path = ctx.worktrees_root / INTEGRATION_DIR
        if path.exists():
            ctx.repo.run("worktree", "remove", "--force", str(path), check=False)
            shutil.rmtree(path, ignore_errors=True)
        ctx.repo.prune_worktrees()
        path.parent.mkdir(parents=True, exist_ok=True)
        ctx.repo.run("worktree", "add", "-B", branch, str(path), isolator.base_ref)
        return GitRepo(path)

    def _discard(self, ctx: IntegrationContext, branch: str) -> None:
        path = ctx.worktrees_root / INTEGRATION_DIR
        ctx.repo.run("worktree", "remove", "--force", str(path), check=False)
        shutil.rmtree(path, ignore_errors=True)
        ctx.repo.prune_worktrees()
        ctx.repo.delete_branch(branch)

    # -- replay --------------------------------------------------------------

    def _replay_task(self, git: GitRepo, isolator: WorkspaceIsolator, task: Task) -> MergeResult:
        try:
            workspace = isolator.locate(task.id)
        except WorkspaceMissingError as exc:
            return MergeResult(
                task_id=task.id,
                outcome=MergeOutcome.FAILED,
                failure_reason=FailureReason.WORKSPACE_MISSING,
                detail=str(exc),
            )
        commits = git.commit_list(isolator.base_ref, workspace.branch)
        if not commits:
            return MergeResult(task_id=task.id, outcome=MergeOutcome.SKIPPED_NO_COMMITS)

        start = git.out("rev-parse", "HEAD")
        resolved_any = False
        for sha in commits:
            try:
                resolved_any = self._cherry_pick(git, sha) or resolved_any
            except (ReplayFailed, GitCommandError) as exc:
                git.run("cherry-pick", "--abort", check=False)
                git.run("reset", "--hard", start)
                return MergeResult(
                    task_id=task.id,
                    outcome=MergeOutcome.CONFLICT_UNRESOLVED,
                    failure_reason=FailureReason.CONFLICT_UNRESOLVED,
                    detail=f"{sha[:12]}: {exc}",
                )
        outcome = MergeOutcome.CONFLICT_RESOLVED if resolved_any else MergeOutcome.MERGED
        return MergeResult(task_id=task.id, outcome=outcome, commits=len(commits))

    def _cherry_pick(self, git: GitRepo, sha: str) -> bool:
        """Apply *sha*; returns True when conflicts had to be resolved."""
        if git.is_merge_commit(sha):
            raise ReplayFailed("merge commits cannot be replayed")
        proc = git.run("cherry-pick", "--keep-redundant-commits", sha, check=False)
        if proc.returncode == 0:
            return False

        conflicted = git.unmerged_paths()
        if not conflicted:
            # Nothing conflicted: the commit became empty on this base.
            if git.run("commit", "--allow-empty", "-C", sha, check=False).returncode == 0:
                return False
            raise ReplayFailed(proc.stderr.strip() or "cherry-pick failed")

        # Take the replayed commit's version, not the branch tip's: later commits
        # of the same task are replayed next and carry their own versions.
        for path in conflicted:
            if git.path_in_commit(sha, path):
                git.run("checkout", sha, "--", path)
                git.run("add", "--", path)
            else:
                git.run("rm", "--quiet", "--", path)
        if git.unmerged_paths():
            raise ReplayFailed("paths still unmerged after resolution")

        if git.run("-c", "core.editor=true", "cherry-pick", "--continue", check=False).returncode != 0:
            if git.run("commit", "--allow-empty", "-C", sha, check=False).returncode != 0:
                raise ReplayFailed("could not commit resolved cherry-pick")
        log.info("Resolved %d conflicted path(s) replaying %s", len(conflicted), sha[:12])
        return True

    # -- publication ---------------------------------------------------------

    @staticmethod
    def _mark(results: list[MergeResult], reason: FailureReason, detail: str) -> None:
        for result in results:
            result.outcome = MergeOutcome.FAILED
            result.failure_reason = reason
            result.detail = detail

    @staticmethod
    def _body(ctx: IntegrationContext, merged: list[MergeResult]) -> str:
        names = {t.id: t.name for t in ctx.tasks}
        lines = [
            "## Request",
            "",
            ctx.request_text.strip(),
            "",
            "## Tasks",
            "",
        ]
        for result in merged:
            note = " (conflicts resolved)" if result.outcome == MergeOutcome.CONFLICT_RESOLVED else ""
            lines.append(f"- {names.get(result.task_id or '', result.task_id)}{note}")
        lines += ["", f"Session: `{ctx.session_id}`"]
        return "\n".join(lines) + "\n"

    @staticmethod
    def _link_issue(ctx: IntegrationContext, git: GitRepo, pr_ref: str) -> None:
        if not ctx.link_issues:
            return
        number = linked_issue(ctx.request_text)
        if number is None:
            return
        try:
            ctx.host.comment_on_issue(git, number, f"Implementation pull request: {pr_ref}")
        except PublishError as exc:
            log.warning("Could not comment on issue #%d: %s", number, exc)
