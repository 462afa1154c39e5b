"""Real git repositories, scripted agents and a recording host for tests."""

from __future__ import annotations

import stat
import subprocess
from pathlib import Path

from scribeswarm.errors import PublishError
from scribeswarm.hosting.base import Issue, PullRequest
from scribeswarm.hosting.github import GitHubCliHost
from scribeswarm.protocol.models import Task, Worker, WorkerStatus
from scribeswarm.workspace.git import GitRepo
from scribeswarm.workspace.worktree import WorkspaceIsolator


def git(cwd: Path, *args: str) -> str:
    proc = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return proc.stdout.strip()


def init_repo(path: Path, files: dict[str, str] | None = None) -> Path:
    """Create a repository on ``main`` with one commit holding *files*."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q", "-b", "main")
    git(path, "config", "user.email", "dev@example.com")
    git(path, "config", "user.name", "Dev")
    git(path, "config", "commit.gpgsign", "false")
    for rel, content in (files or {"README.md": "# demo\n"}).items():
        target = path / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "initial")
    return path


def add_bare_remote(repo: Path, remote_path: Path, name: str = "origin") -> Path:
    git(repo, "init", "-q", "--bare", str(remote_path))
    git(repo, "remote", "add", name, str(remote_path))
    git(repo, "push", "-q", name, "main")
    return remote_path


def commit_file(repo: Path, rel: str, content: str, message: str) -> str:
    target = repo / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


def write_agent(path: Path, body: str) -> list[str]:
    """Write an executable ``sh`` script standing in for an agent CLI."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return [str(path)]


# Writes one file named after the task and commits it.
COMMITTING_AGENT = """\
cat > /dev/null
mkdir -p out
echo "$SCRIBE_TASK_ID" > "out/$SCRIBE_TASK_ID.txt"
git add -A
git commit -q -m "work on $SCRIBE_TASK_ID"
"""


class RecordingHost(GitHubCliHost):
    """GitHub host whose pull requests and issues live in memory.

    Branch pushes still go to the real git remote so content comparison and
    force-with-lease behave as they would against a server.
    """

    def __init__(self, remote: str = "origin") -> None:
        super().__init__(remote)
        self.pull_requests: dict[str, PullRequest] = {}
        self.created_prs: list[dict[str, object]] = []
        self.issues: list[Issue] = []
        self.issue_bodies: list[tuple[str, str]] = []
        self.issue_comments: list[tuple[int, str]] = []
        self.pushes: list[tuple[str, str | None]] = []
        self.fail_pr_create = False

    def push_branch(self, repo: GitRepo, branch: str, *, force_with_lease: str | None = None) -> None:
        self.pushes.append((branch, force_with_lease))
        super().push_branch(repo, branch, force_with_lease=force_with_lease)

    def find_pull_request(self, repo: GitRepo, head: str) -> PullRequest | None:
        return self.pull_requests.get(head)

    def create_pull_request(
        self,
        repo: GitRepo,
        *,
        base: str,
        head: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PullRequest:
        if self.fail_pr_create:
            raise PublishError("gh pr create failed: HTTP 502")
        number = len(self.created_prs) + 1
        pr = PullRequest(url=f"https://github.com/acme/demo/pull/{number}", head=head)
        self.pull_requests[head] = pr
        self.created_prs.append({"base": base, "head": head, "title": title, "body": body, "draft": draft})
        return pr

    def create_tracking_issue(self, repo: GitRepo, *, title: str, body: str) -> Issue:
        issue = Issue(url=f"https://github.com/acme/demo/issues/{100 + len(self.issues)}")
        self.issues.append(issue)
        self.issue_bodies.append((title, body))
        return issue

    def comment_on_issue(self, repo: GitRepo, number: int, body: str) -> None:
        self.issue_comments.append((number, body))


def prepare_task_branches(
    repo: Path,
    session_dir: Path,
    changes: dict[str, list[tuple[str, str]]],
    *,
    session_id: str = "s1",
) -> tuple[list[Task], dict[str, Worker]]:
    """Create one worktree per task, commit *changes* in it and mark it completed."""
    isolator = WorkspaceIsolator(GitRepo(repo), session_dir / "worktrees", session_id, "main")
    tasks: list[Task] = []
    workers: dict[str, Worker] = {}
    for index, (task_id, files) in enumerate(changes.items()):
        workspace = isolator.acquire(task_id)
        for rel, content in files:
            commit_file(workspace.path, rel, content, f"{task_id}: update {rel}")
        tasks.append(Task(id=task_id, name=f"Task {task_id}", order=index))
        workers[task_id] = Worker(
            task_id=task_id,
            branch=workspace.branch,
            workspace_path=str(workspace.path),
            status=WorkerStatus.COMPLETED,
        )
    return tasks, workers
