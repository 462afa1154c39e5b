"""Thin wrapper over the git CLI.

All commands run through ``subprocess.run`` with captured text output; a
non-zero exit is raised as :class:`GitCommandError` unless ``check=False``.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from scribeswarm.errors import GitCommandError

log = logging.getLogger(__name__)


class GitRepo:
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def __repr__(self) -> str:
        return f"GitRepo({str(self.root)!r})"

    # -- process plumbing --------------------------------------------------

    def run(
        self,
        *args: str,
        check: bool = True,
        input: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        argv = ["git", *args]
        try:
            return subprocess.run(
                argv,
                cwd=self.root,
                check=check,
                capture_output=True,
                text=True,
                input=input,
            )
        except subprocess.CalledProcessError as exc:
            raise GitCommandError(argv, exc.returncode, exc.stderr or "") from exc
        except FileNotFoundError as exc:
            raise GitCommandError(argv, 127, f"cannot run git in {self.root}: {exc}") from exc

    def out(self, *args: str) -> str:
        return self.run(*args).stdout.strip()

    def ok(self, *args: str) -> bool:
        try:
            return self.run(*args, check=False).returncode == 0
        except GitCommandError:
            return False

    # -- queries -----------------------------------------------------------

    def is_repo(self) -> bool:
        return self.root.exists() and self.ok("rev-parse", "--git-dir")

    def rev_parse(self, ref: str) -> str | None:
        if not self.root.exists():
            return None
        proc = self.run("rev-parse", "--verify", "--quiet", ref, check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def tree_of(self, ref: str = "HEAD") -> str | None:
        return self.rev_parse(f"{ref}^{{tree}}")

    def branch_exists(self, branch: str) -> bool:
        return self.rev_parse(f"refs/heads/{branch}") is not None

    def current_branch(self) -> str:
        return self.out("rev-parse", "--abbrev-ref", "HEAD")

    def resolve_base(self, base: str, remote: str = "origin") -> str:
        """Return *base* if it resolves locally, else ``remote/base``."""
        if self.rev_parse(base) is not None:
            return base
        remote_ref = f"{remote}/{base}"
        if self.rev_parse(remote_ref) is not None:
            return remote_ref
        raise GitCommandError(["git", "rev-parse", base], 128, f"unknown base branch {base!r}")

    def remote_url(self, remote: str = "origin") -> str:
        proc = self.run("remote", "get-url", remote, check=False)
        return proc.stdout.strip() if proc.returncode == 0 else ""

    def status_porcelain(self) -> list[str]:
        return [line for line in self.run("status", "--porcelain").stdout.splitlines() if line.strip()]

    def commits_ahead(self, base: str, head: str = "HEAD") -> int:
        value = self.out("rev-list", "--count", f"{base}..{head}")
        return int(value or 0)

    def commit_list(self, base: str, head: str = "HEAD") -> list[str]:
        """Commits in ``base..head``, oldest first."""
        return self.out("rev-list", "--reverse", f"{base}..{head}").split()

    def changed_files(self, base: str, head: str = "HEAD") -> list[str]:
        return [p for p in self.out("diff", "--name-only", f"{base}...{head}").splitlines() if p]

    def unmerged_paths(self) -> list[str]:
        return [p for p in self.out("diff", "--name-only", "--diff-filter=U").splitlines() if p]

    def path_in_commit(self, sha: str, path: str) -> bool:
        return self.ok("cat-file", "-e", f"{sha}:{path}")

    def is_merge_commit(self, sha: str) -> bool:
        parents = self.out("rev-list", "--parents", "-n", "1", sha).split()
        return len(parents) > 2

    def commit_subject(self, sha: str) -> str:
        return self.out("log", "-1", "--format=%s", sha)

    def worktree_paths(self) -> dict[Path, str]:
        """Registered worktrees mapped to their checked-out branch ('' if detached)."""
        result: dict[Path, str] = {}
        current: Path | None = None
        for line in self.out("worktree", "list", "--porcelain").splitlines():
            if line.startswith("worktree "):
                current = Path(line[len("worktree "):]).resolve()
                result[current] = ""
            elif line.startswith("branch ") and current is not None:
                result[current] = line[len("branch "):].removeprefix("refs/heads/")
        return result

    # -- mutations ---------------------------------------------------------

    def add_all(self) -> None:
        self.run("add", "-A")

    def commit(self, message: str, *, allow_empty: bool = False) -> None:
        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        self.run(*args)

    def fetch(self, remote: str, refspec: str | None = None) -> bool:
        args = ["fetch", "--quiet", remote]
        if refspec:
            args.append(refspec)
        ok = self.ok(*args)
        if not ok:
            log.debug("git fetch %s %s failed in %s", remote, refspec or "", self.root)
        return ok

    def delete_branch(self, branch: str) -> None:
        """Force-delete a local branch; a missing branch is not an error."""
        try:
            self.run("branch", "-D", branch)
        except GitCommandError:
            pass

    def prune_worktrees(self) -> None:
        try:
            self.run("worktree", "prune")
        except GitCommandError as exc:
            log.warning("git worktree prune failed: %s", exc.stderr)

    @classmethod
    def clone(cls, url: str, dest: Path) -> GitRepo:
        dest.parent.mkdir(parents=True, exist_ok=True)
        GitRepo(dest.parent).run("clone", "--quiet", url, str(dest))
        return cls(dest)
