"""Shared pieces of the integration strategies."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from scribeswarm.errors import PushRejectedError
from scribeswarm.hosting.base import PullRequest, RepoHost
from scribeswarm.protocol.models import (
    IntegrationReport,
    MergeStrategy,
    Task,
    Worker,
    WorkerStatus,
)
from scribeswarm.workspace.git import GitRepo
from scribeswarm.workspace.worktree import WorkspaceIsolator

log = logging.getLogger(__name__)

_ISSUE_RE = re.compile(r"\bissue\s*#(\d+)", re.IGNORECASE)


@dataclass(slots=True)
class IntegrationContext:
    session_id: str
    request_text: str
    repo: GitRepo
    base_branch: str
    session_dir: Path
    host: RepoHost
    tasks: list[Task] = field(default_factory=list)
    workers: dict[str, Worker] = field(default_factory=dict)
    previous: IntegrationReport | None = None
    remote: str = "origin"
    draft: bool = False
    link_issues: bool = True

    @property
    def worktrees_root(self) -> Path:
        return self.session_dir / "worktrees"

    def isolator(self) -> WorkspaceIsolator:
        return WorkspaceIsolator(
            self.repo, self.worktrees_root, self.session_id, self.base_branch, remote=self.remote
        )

    def completed_tasks(self) -> list[Task]:
        """Tasks whose worker completed, in priority then decomposition order."""
        ordered = sorted(self.tasks, key=lambda t: t.sort_key)
        return [
            t for t in ordered
            if t.id in self.workers and self.workers[t.id].status == WorkerStatus.COMPLETED
        ]


class Integrator(Protocol):
    strategy: MergeStrategy

    def integrate(self, ctx: IntegrationContext) -> IntegrationReport: ...


def linked_issue(request_text: str) -> int | None:
    match = _ISSUE_RE.search(request_text)
    return int(match.group(1)) if match else None


def headline(request_text: str, limit: int = 72) -> str:
    first = next((line.strip() for line in request_text.splitlines() if line.strip()), "requested changes")
    return first if len(first) <= limit else first[: limit - 3].rstrip() + "..."


def sync_branch(host: RepoHost, repo: GitRepo, branch: str, local_tree: str | None) -> bool:
    """Make the remote branch carry *local_tree*; returns whether a push happened.

    Identical content is never pushed.  A rejected plain push is retried once
    with ``--force-with-lease`` pinned to the remote head that was observed.
    """
    remote_sha = host.remote_head(repo, branch)
    if remote_sha is None:
        host.push_branch(repo, branch)
        return True
    remote_tree = host.remote_tree(repo, branch)
    if local_tree is not None and remote_tree == local_tree:
        log.info("Remote %s already has identical content; not pushing", branch)
        return False
    try:
        host.push_branch(repo, branch)
    except PushRejectedError as exc:
        log.warning("Push of %s rejected (%s); retrying with --force-with-lease", branch, exc)
        host.push_branch(repo, branch, force_with_lease=remote_sha)
    return True


def find_or_create_pr(
    host: RepoHost,
    repo: GitRepo,
    *,
    base: str,
    head: str,
    title: str,
    body: str,
    draft: bool,
    recorded_ref: str = "",
) -> tuple[PullRequest, bool]:
    """Return ``(pull_request, reused)``; raises ``PublishError`` on failure."""
    existing = host.find_pull_request(repo, head)
    if existing is not None:
        return existing, True
    if recorded_ref:
        return PullRequest(url=recorded_ref, head=head), True
    return host.create_pull_request(repo, base=base, head=head, title=title, body=body, draft=draft), False
