from __future__ import annotations

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from scribeswarm.errors import PublishError
from scribeswarm.hosting.base import GitRemoteOps, PullRequest, number_from_url
from scribeswarm.hosting.github import GitHubCliHost
from scribeswarm.hosting.registry import get_host
from scribeswarm.integration.base import headline, linked_issue
from scribeswarm.workspace.git import GitRepo
from tests.helpers.fixtures import add_bare_remote, commit_file, git


def _done(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=["gh"], returncode=returncode, stdout=stdout, stderr=stderr)


def test_number_from_url_and_pr_ref() -> None:
    assert number_from_url("https://github.com/a/b/pull/42") == 42
    assert number_from_url("https://github.com/a/b/issues/7") == 7
    assert PullRequest(url="https://github.com/a/b/pull/3", head="x").number == 3
    assert PullRequest(url="", head="x", number=5).ref == "#5"


def test_request_text_helpers() -> None:
    assert linked_issue("Please fix Issue #12 and more") == 12
    assert linked_issue("nothing linked") is None
    assert headline("\n  First line  \nsecond") == "First line"
    assert headline("x" * 100).endswith("...")
    assert len(headline("x" * 100)) == 72


@patch("scribeswarm.hosting.github.subprocess.run")
def test_find_pull_request_parses_json(mock_run: MagicMock) -> None:
    mock_run.return_value = _done(
        json.dumps([{"number": 9, "url": "https://github.com/a/b/pull/9", "headRefName": "scribe/s1/t1", "state": "OPEN"}])
    )
    pr = GitHubCliHost().find_pull_request(GitRepo(Path("/repo")), "scribe/s1/t1")
    assert pr is not None and pr.number == 9 and pr.state == "open"
    argv = mock_run.call_args.args[0]
    assert argv[:3] == ["gh", "pr", "list"]
    assert argv[argv.index("--head") + 1] == "scribe/s1/t1"


@patch("scribeswarm.hosting.github.subprocess.run", return_value=_done("[]"))
def test_find_pull_request_none(mock_run: MagicMock) -> None:
    assert GitHubCliHost().find_pull_request(GitRepo(Path("/repo")), "b") is None


@patch("scribeswarm.hosting.github.subprocess.run")
def test_create_pull_request_sends_body_on_stdin(mock_run: MagicMock) -> None:
    mock_run.return_value = _done("Creating pull request...\nhttps://github.com/a/b/pull/11\n")
    pr = GitHubCliHost().create_pull_request(
        GitRepo(Path("/repo")), base="main", head="scribe/s1/integration", title="T", body="B", draft=True
    )
    assert pr.url == "https://github.com/a/b/pull/11"
    assert pr.number == 11
    argv = mock_run.call_args.args[0]
    assert "--draft" in argv and "--body-file" in argv
    assert mock_run.call_args.kwargs["input"] == "B"
    assert mock_run.call_args.kwargs["cwd"] == Path("/repo")


@patch("scribeswarm.hosting.github.subprocess.run", return_value=_done(returncode=1, stderr="HTTP 422: Validation Failed"))
def test_gh_failure_is_publish_error(mock_run: MagicMock) -> None:
    with pytest.raises(PublishError, match="Validation Failed"):
        GitHubCliHost().create_tracking_issue(GitRepo(Path("/repo")), title="t", body="b")


@patch("scribeswarm.hosting.github.subprocess.run", side_effect=FileNotFoundError("gh"))
def test_missing_gh_is_publish_error(mock_run: MagicMock) -> None:
    with pytest.raises(PublishError, match="not found"):
        GitHubCliHost().comment_on_issue(GitRepo(Path("/repo")), 3, "hi")


@patch("scribeswarm.hosting.github.subprocess.run")
def test_list_pr_comments_merges_issue_and_review_comments(mock_run: MagicMock) -> None:
    mock_run.side_effect = [
        _done(json.dumps({"number": 4, "comments": [{"author": {"login": "amy"}, "body": "Why?", "createdAt": "t0"}]})),
        _done(json.dumps([{"user": {"login": "bo"}, "body": "typo", "path": "a.py", "line": 3, "created_at": "t1"}])),
    ]
    comments = GitHubCliHost().list_pr_comments(GitRepo(Path("/repo")), "4")
    assert [(c.author, c.kind) for c in comments] == [("amy", "issue"), ("bo", "review")]
    assert comments[1].path == "a.py" and comments[1].line == 3
    assert mock_run.call_args_list[1].args[0][:3] == ["gh", "api", "repos/{owner}/{repo}/pulls/4/comments"]


def test_registry() -> None:
    assert isinstance(get_host("github", remote="upstream"), GitHubCliHost)
    assert get_host("GitHub").remote == "origin"
    with pytest.raises(ValueError):
        get_host("gitlab")


def test_remote_ops_against_bare_remote(repo: Path, tmp_path: Path) -> None:
    remote = add_bare_remote(repo, tmp_path / "remote.git")
    ops = GitRemoteOps("origin")
    g = GitRepo(repo)
    assert ops.remote_head(g, "feature") is None
    assert ops.remote_tree(g, "feature") is None

    git(repo, "checkout", "-q", "-b", "feature")
    commit_file(repo, "f.txt", "f\n", "feature")
    ops.push_branch(g, "feature")
    assert ops.remote_head(g, "feature") == git(remote, "rev-parse", "refs/heads/feature")
    assert ops.remote_tree(g, "feature") == g.tree_of("feature")
