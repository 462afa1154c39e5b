"""Repository host interface plus the git-side remote operations it builds on."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from scribeswarm.errors import GitCommandError, PushRejectedError
from scribeswarm.workspace.git import GitRepo

log = logging.getLogger(__name__)

_NUMBER_RE = re.compile(r"/(?:pull|issues)/(\d+)")


def number_from_url(url: str) -> int | None:
    match = _NUMBER_RE.search(url)
    return int(match.group(1)) if match else None


@dataclass(slots=True)
class PullRequest:
    url: str
    head: str
    number: int | None = None
    state: str = "open"

    def __post_init__(self) -> None:
        if self.number is None:
            self.number = number_from_url(self.url)

    @property
    def ref(self) -> str:
        return self.url or (f"#{self.number}" if self.number is not None else self.head)


@dataclass(slots=True)
class Issue:
    url: str
    number: int | None = None

    def __post_init__(self) -> None:
        if self.number is None:
            self.number = number_from_url(self.url)


@dataclass(slots=True)
class ReviewComment:
    author: str
    body: str
    path: str = ""
    line: int | None = None
    created_at: str = ""
    kind: str = "issue"  # issue | review
    extra: dict[str, str] = field(default_factory=dict)


class RepoHost(Protocol):
    remote: str

    def remote_head(self, repo: GitRepo, branch: str) -> str | None: ...

    def remote_tree(self, repo: GitRepo, branch: str) -> str | None: ...

    def push_branch(self, repo: GitRepo, branch: str, *, force_with_lease: str | None = None) -> None: ...

    def find_pull_request(self, repo: GitRepo, head: str) -> PullRequest | None: ...

    def create_pull_request(
        self,
        repo: GitRepo,
        *,
        base: str,
        head: str,
        title: str,
        body: str,
        draft: bool = False,
    ) -> PullRequest: ...

    def create_tracking_issue(self, repo: GitRepo, *, title: str, body: str) -> Issue: ...

    def comment_on_issue(self, repo: GitRepo, number: int, body: str) -> None: ...

    def list_pr_comments(self, repo: GitRepo, pr_ref: str) -> list[ReviewComment]: ...


class GitRemoteOps:
    """Branch inspection and push against a named git remote."""

    def __init__(self, remote: str = "origin") -> None:
        self.remote = remote

    def remote_head(self, repo: GitRepo, branch: str) -> str | None:
        proc = repo.run("ls-remote", "--heads", self.remote, f"refs/heads/{branch}", check=False)
        if proc.returncode != 0:
            log.debug("ls-remote %s %s failed: %s", self.remote, branch, proc.stderr.strip())
            return None
        for line in proc.stdout.splitlines():
            sha, _, ref = line.partition("\t")
            if ref.strip() == f"refs/heads/{branch}":
                return sha.strip()
        return None

    def remote_tree(self, repo: GitRepo, branch: str) -> str | None:
        """Tree id of the remote branch, or None when the branch is absent."""
        sha = self.remote_head(repo, branch)
        if sha is None:
            return None
        tracking = f"refs/remotes/{self.remote}/{branch}"
        if not repo.fetch(self.remote, f"+refs/heads/{branch}:{tracking}"):
            return None
        return repo.tree_of(sha)

    def push_branch(self, repo: GitRepo, branch: str, *, force_with_lease: str | None = None) -> None:
        args = ["push", "--porcelain"]
        if force_with_lease is not None:
            args.append(f"--force-with-lease=refs/heads/{branch}:{force_with_lease}")
        args += [self.remote, f"refs/heads/{branch}:refs/heads/{branch}"]
        try:
            proc = repo.run(*args, check=False)
        except GitCommandError as exc:
            raise PushRejectedError(branch, exc.stderr) from exc
        # Porcelain marks each rejected ref with a leading "!".
        rejected = [line for line in proc.stdout.splitlines() if line.startswith("!")]
        if proc.returncode != 0 or rejected:
            raise PushRejectedError(branch, "\n".join(rejected) or proc.stderr)
        log.info("Pushed %s to %s%s", branch, self.remote, " (force-with-lease)" if force_with_lease else "")
