"""Federated integration: one pull request per task plus a tracking issue."""

from __future__ import annotations

import logging

from scribeswarm.errors import FailureReason, PublishError, PushRejectedError, WorkspaceMissingError
from scribeswarm.integration.base import IntegrationContext, find_or_create_pr, headline, sync_branch
from scribeswarm.protocol.models import (
    IntegrationReport,
    MergeOutcome,
    MergeResult,
    MergeStrategy,
    Task,
)

log = logging.getLogger(__name__)


class FederatedIntegrator:
    strategy = MergeStrategy.FEDERATED

    def integrate(self, ctx: IntegrationContext) -> IntegrationReport:
        report = IntegrationReport(strategy=self.strategy)
        published: list[tuple[Task, MergeResult]] = []
        for task in ctx.completed_tasks():
            result = self._publish_task(ctx, task, report)
            report.results.append(result)
            if result.outcome == MergeOutcome.MERGED:
                published.append((task, result))
            log.info("Federated publish of %s: %s %s", task.id, result.outcome, result.published_ref)

        if not published:
            return report

        tracking = self._tracking_issue(ctx, published)
        report.results.append(tracking)
        if tracking.outcome == MergeOutcome.MERGED:
            report.tracking_ref = tracking.published_ref
            report.artifact_ref = tracking.published_ref
            report.success = True
        return report

    def _publish_task(self, ctx: IntegrationContext, task: Task, report: IntegrationReport) -> MergeResult:
        isolator = ctx.isolator()
        try:
            workspace = isolator.locate(task.id)
        except WorkspaceMissingError as exc:
            return MergeResult(
                task_id=task.id,
                outcome=MergeOutcome.FAILED,
                failure_reason=FailureReason.WORKSPACE_MISSING,
                detail=str(exc),
            )
        commits = ctx.repo.commits_ahead(isolator.base_ref, workspace.branch)
        if commits == 0:
            return MergeResult(task_id=task.id, outcome=MergeOutcome.SKIPPED_NO_COMMITS)

        tree = ctx.repo.tree_of(workspace.branch)
        try:
            if sync_branch(ctx.host, ctx.repo, workspace.branch, tree):
                report.pushed = True
        except PushRejectedError as exc:
            return MergeResult(
                task_id=task.id,
                outcome=MergeOutcome.FAILED,
                failure_reason=FailureReason.PUSH_REJECTED,
                detail=str(exc),
                commits=commits,
            )

        recorded = ""
        if ctx.previous is not None:
            prior = ctx.previous.for_task(task.id)
            if prior is not None and prior.outcome == MergeOutcome.MERGED:
                recorded = prior.published_ref
        try:
            pr, reused = find_or_create_pr(
                ctx.host,
                ctx.repo,
                base=ctx.base_branch,
                head=workspace.branch,
                title=task.name,
                body=self._task_body(ctx, task),
                draft=ctx.draft,
                recorded_ref=recorded,
            )
        except PublishError as exc:
            return MergeResult(
                task_id=task.id,
                outcome=MergeOutcome.FAILED,
                failure_reason=FailureReason.PUBLISH_FAILED,
                detail=str(exc),
                commits=commits,
            )
        if reused:
            report.reused_existing = True
        return MergeResult(
            task_id=task.id,
            outcome=MergeOutcome.MERGED,
            published_ref=pr.ref,
            commits=commits,
        )

    def _tracking_issue(
        self,
        ctx: IntegrationContext,
        published: list[tuple[Task, MergeResult]],
    ) -> MergeResult:
        if ctx.previous is not None and ctx.previous.tracking_ref:
            return MergeResult(task_id=None, outcome=MergeOutcome.MERGED, published_ref=ctx.previous.tracking_ref)
        lines = [
            ctx.request_text.strip(),
            "",
            "## Pull requests",
            "",
        ]
        lines += [f"- [ ] {task.name}: {result.published_ref}" for task, result in published]
        lines += ["", f"Session: `{ctx.session_id}`"]
        try:
            issue = ctx.host.create_tracking_issue(
                ctx.repo,
                title=f"Tracking: {headline(ctx.request_text)}",
                body="\n".join(lines) + "\n",
            )
        except PublishError as exc:
            return MergeResult(
                task_id=None,
                outcome=MergeOutcome.FAILED,
                failure_reason=FailureReason.PUBLISH_FAILED,
                detail=str(exc),
            )
        return MergeResult(task_id=None, outcome=MergeOutcome.MERGED, published_ref=issue.url)

    @staticmethod
    def _task_body(ctx: IntegrationContext, task: Task) -> str:
        return (
            f"Part of: {headline(ctx.request_text)}\n\n"
            f"## {task.name}\n\n{task.description}\n\n"
            f"Session: `{ctx.session_id}` / task `{task.id}`\n"
        )
