"""Per-task worktree isolation.

Each task gets a branch ``scribe/<session_id>/<task_id>`` checked out in its
own directory under the session's ``worktrees/`` folder.  Names are derived
from the session and task ids only, so a re-run of the same session finds and
reuses the same workspace.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from scribeswarm.errors import GitCommandError, WorkspaceError, WorkspaceMissingError
from scribeswarm.workspace.git import GitRepo

log = logging.getLogger(__name__)

INTEGRATION_DIR = "_integration"


def branch_name(session_id: str, task_id: str) -> str:
    return f"scribe/{session_id}/{task_id}"


def integration_branch_name(session_id: str) -> str:
    return f"scribe/{session_id}/integration"


@dataclass(slots=True)
class Workspace:
    task_id: str
    path: Path
    branch: str
    base_ref: str
    reused: bool = False

    @property
    def git(self) -> GitRepo:
        return GitRepo(self.path)


class WorkspaceIsolator:
    def __init__(
        self,
        repo: GitRepo,
        worktrees_root: Path,
        session_id: str,
        base_branch: str,
        *,
        remote: str = "origin",
    ) -> None:
        self.repo = repo
        self.worktrees_root = Path(worktrees_root)
        self.session_id = session_id
        self.base_branch = base_branch
        self.remote = remote
        self._base_ref: str | None = None

    @property
    def base_ref(self) -> str:
        if self._base_ref is None:
            self._base_ref = self.repo.resolve_base(self.base_branch, self.remote)
        return self._base_ref

    def branch_for(self, task_id: str) -> str:
        return branch_name(self.session_id, task_id)

    def path_for(self, task_id: str) -> Path:
        return self.worktrees_root / task_id

    def acquire(self, task_id: str) -> Workspace:
        """Create the task's worktree, or reuse it if a previous run left one."""
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)
        try:
            base_ref = self.base_ref
            self.repo.prune_worktrees()
            registered = self.repo.worktree_paths()
            if path.exists():
                checked_out = registered.get(path.resolve())
                if checked_out == branch:
                    log.info("Reusing worktree %s on %s", path, branch)
                    return Workspace(task_id, path, branch, base_ref, reused=True)
                raise WorkspaceError(
                    f"{path} exists but is not the worktree for {branch}",
                    details={"path": str(path), "checked_out": checked_out},
                )
            path.parent.mkdir(parents=True, exist_ok=True)
            if self.repo.branch_exists(branch):
                self.repo.run("worktree", "add", str(path), branch)
                reused = True
            else:
                self.repo.run("worktree", "add", "-b", branch, str(path), base_ref)
                reused = False
        except GitCommandError as exc:
            raise WorkspaceError(f"Could not create worktree for {task_id}: {exc}") from exc
        log.info("Created worktree %s on %s (base %s)", path, branch, base_ref)
        return Workspace(task_id, path, branch, base_ref, reused=reused)

    def locate(self, task_id: str) -> Workspace:
        """Find an existing workspace without creating anything."""
        path = self.path_for(task_id)
        branch = self.branch_for(task_id)
        if not self.repo.branch_exists(branch):
            raise WorkspaceMissingError(f"Branch {branch} no longer exists")
        if not path.exists():
            raise WorkspaceMissingError(f"Worktree {path} no longer exists")
        return Workspace(task_id, path, branch, self.base_ref, reused=True)

    def lock(self, workspace: Workspace, reason: str = "scribeswarm worker running") -> None:
        proc = self.repo.run("worktree", "lock", "--reason", reason, str(workspace.path), check=False)
        if proc.returncode != 0 and "already locked" not in proc.stderr:
            raise WorkspaceError(f"Could not lock {workspace.path}: {proc.stderr.strip()}")

    def unlock(self, workspace: Workspace) -> None:
        try:
            proc = self.repo.run("worktree", "unlock", str(workspace.path), check=False)
        except GitCommandError as exc:
            log.warning("git worktree unlock %s failed: %s", workspace.path, exc)
            return
        if proc.returncode != 0 and "not locked" not in proc.stderr:
            log.warning("git worktree unlock %s failed: %s", workspace.path, proc.stderr.strip())

    def auto_commit(self, workspace: Workspace, message: str) -> int:
        """Stage and commit any uncommitted edits; returns the dirty path count."""
        git = workspace.git
        dirty = git.status_porcelain()
        if not dirty:
            return 0
        log.info("Committing %d uncommitted path(s) in %s", len(dirty), workspace.path)
        git.add_all()
        git.commit(message)
        return len(dirty)

    def commits_ahead(self, workspace: Workspace) -> int:
        return workspace.git.commits_ahead(workspace.base_ref)

    def changed_files(self, workspace: Workspace) -> list[str]:
        return workspace.git.changed_files(workspace.base_ref)

    def discard(self, workspace: Workspace, *, delete_branch: bool = False) -> None:
        try:
            self.repo.run("worktree", "unlock", str(workspace.path), check=False)
            self.repo.run("worktree", "remove", "--force", str(workspace.path))
        except GitCommandError as exc:
            log.warning("git worktree remove %s failed: %s", workspace.path, exc.stderr)
            shutil.rmtree(workspace.path, ignore_errors=True)
        if delete_branch:
            self.repo.delete_branch(workspace.branch)
        self.repo.prune_worktrees()

    def cleanup(self, *, delete_branches: bool = False) -> list[Path]:
        """Remove every worktree under this session's root."""
        removed: list[Path] = []
        if not self.worktrees_root.exists():
            return removed
        for child in sorted(self.worktrees_root.iterdir()):
            if not child.is_dir():
                continue
            if child.name == INTEGRATION_DIR:
                branch = integration_branch_name(self.session_id)
            else:
                branch = self.branch_for(child.name)
            self.discard(
                Workspace(child.name, child, branch, self.base_branch),
                delete_branch=delete_branches,
            )
            removed.append(child)
        self.repo.prune_worktrees()
        return removed
