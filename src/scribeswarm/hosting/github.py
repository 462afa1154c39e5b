"""GitHub host backed by the ``gh`` CLI.

Authentication is whatever ``gh auth login`` established; nothing here handles
tokens.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

from scribeswarm.errors import PublishError
from scribeswarm.hosting.base import GitRemoteOps, Issue, PullRequest, ReviewComment
from scribeswarm.workspace.git import GitRepo

log = logging.getLogger(__name__)


class GitHubCliHost(GitRemoteOps):
    def __init__(self, remote: str = "origin", *, binary: str = "gh") -> None:
        super().__init__(remote)
        self.binary = binary

    def _gh(self, repo: GitRepo, *args: str, input: str | None = None) -> str:
        argv = [self.binary, *args]
        try:
            proc = subprocess.run(
                argv,
                cwd=repo.root,
                check=False,
                capture_output=True,
                text=True,
                input=input,
            )
        except FileNotFoundError as exc:
            raise PublishError(f"{self.binary} CLI not found on PATH") from exc
        if proc.returncode != 0:
            raise PublishError(
                f"{' '.join(argv[:3])} failed: {proc.stderr.strip() or proc.stdout.strip()}",
                details={"argv": argv, "returncode": proc.returncode},
            )
        return proc.stdout.strip()

    def find_pull_request(self, repo: GitRepo, head: str) -> PullRequest | None:
        raw = self._gh(
            repo,
            "pr", "list",
            "--head", head,
            "--state", "open",
            "--json", "number,url,headRefName,state",
            "--limit", "1",
        )
        items = json.loads(raw or "[]")
        if not items:
            return None
        item = items[0]
        return PullRequest(
            url=item.get("url", ""),
            head=item.get("headRefName", head),
            number=item.get("number"),
            state=str(item.get("state", "open")).lower(),
        )

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
        args = ["pr", "create", "--base", base, "--head", head, "--title", title, "--body-file", "-"]
        if draft:
            args.append("--draft")
        url = self._gh(repo, *args, input=body).splitlines()[-1].strip()
        log.info("Created pull request %s for %s", url, head)
        return PullRequest(url=url, head=head)

    def create_tracking_issue(self, repo: GitRepo, *, title: str, body: str) -> Issue:
        url = self._gh(repo, "issue", "create", "--title", title, "--body-file", "-", input=body)
        url = url.splitlines()[-1].strip()
        log.info("Created tracking issue %s", url)
        return Issue(url=url)

    def comment_on_issue(self, repo: GitRepo, number: int, body: str) -> None:
        self._gh(repo, "issue", "comment", str(number), "--body-file", "-", input=body)

    def list_pr_comments(self, repo: GitRepo, pr_ref: str) -> list[ReviewComment]:
        view = json.loads(self._gh(repo, "pr", "view", pr_ref, "--json", "number,comments") or "{}")
        comments = [self._issue_comment(c) for c in view.get("comments", [])]
        number = view.get("number")
        if number is not None:
            raw = self._gh(repo, "api", f"repos/{{owner}}/{{repo}}/pulls/{number}/comments")
            comments += [self._review_comment(c) for c in json.loads(raw or "[]")]
        return comments

    @staticmethod
    def _issue_comment(item: dict[str, Any]) -> ReviewComment:
        author = item.get("author") or {}
        return ReviewComment(
            author=str(author.get("login", "")),
            body=str(item.get("body", "")),
            created_at=str(item.get("createdAt", "")),
            kind="issue",
        )

    @staticmethod
    def _review_comment(item: dict[str, Any]) -> ReviewComment:
        user = item.get("user") or {}
        line = item.get("line") or item.get("original_line")
        return ReviewComment(
            author=str(user.get("login", "")),
            body=str(item.get("body", "")),
            path=str(item.get("path", "")),
            line=int(line) if line is not None else None,
            created_at=str(item.get("created_at", "")),
            kind="review",
        )
