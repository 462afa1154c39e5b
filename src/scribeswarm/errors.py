"""scribeswarm error hierarchy and failure taxonomy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class FailureReason(StrEnum):
    """Machine-readable reason recorded on failed sessions, workers and merges."""

    DECOMPOSITION_EMPTY = "decomposition_empty"
    WORKSPACE_ERROR = "workspace_error"
    AGENT_ERROR = "agent_error"
    TIMED_OUT = "timed_out"
    NO_CHANGES_PRODUCED = "no_changes_produced"
    INTERRUPTED = "interrupted"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    WORKSPACE_MISSING = "workspace_missing"
    PUSH_REJECTED = "push_rejected"
    PUBLISH_FAILED = "publish_failed"
    INTERNAL_ERROR = "internal_error"


class ScribeError(Exception):
    """Base error for all scribeswarm exceptions."""

    def __init__(
        self,
        message: str,
        *,
        reason: FailureReason | None = None,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, reason={self.reason!r})"


class ConfigurationError(ScribeError):
    """Invalid or missing configuration."""


class SessionNotFoundError(ScribeError):
    """No persisted session with the requested id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class InvalidTransitionError(ScribeError):
    """A state machine was asked to move along an edge it does not have."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"{entity}: illegal transition {current} -> {target}",
            reason=FailureReason.INTERNAL_ERROR,
        )
        self.entity = entity
        self.current = current
        self.target = target


class DecompositionError(ScribeError):
    """The decomposer produced an unusable task list."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("reason", FailureReason.DECOMPOSITION_EMPTY)
        super().__init__(message, **kwargs)


class DecompositionEmptyError(DecompositionError):
    """The decomposer returned zero tasks."""

    def __init__(self, message: str = "Decomposition produced no tasks") -> None:
        super().__init__(message)


class WorkspaceError(ScribeError):
    """A worktree could not be created, locked or inspected."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("reason", FailureReason.WORKSPACE_ERROR)
        super().__init__(message, **kwargs)


class WorkspaceMissingError(WorkspaceError):
    """A worker's worktree or branch no longer exists."""

    def __init__(self, message: str) -> None:
        super().__init__(message, reason=FailureReason.WORKSPACE_MISSING)


class GitCommandError(ScribeError):
    """A git invocation exited non-zero."""

    def __init__(self, argv: list[str], returncode: int, stderr: str = "") -> None:
        cmd = " ".join(argv)
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(f"git command failed ({returncode}): {cmd}" + (f": {tail}" if tail else ""))
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr


class AgentNotFoundError(ScribeError):
    """The configured agent binary is not on PATH."""

    def __init__(self, binary: str) -> None:
        super().__init__(
            f"Agent binary not found: {binary}",
            reason=FailureReason.AGENT_ERROR,
        )
        self.binary = binary


class PushRejectedError(ScribeError):
    """The remote refused a branch push."""

    def __init__(self, branch: str, stderr: str = "") -> None:
        super().__init__(
            f"Push of {branch} rejected" + (f": {stderr.strip()}" if stderr.strip() else ""),
            reason=FailureReason.PUSH_REJECTED,
            retryable=True,
        )
        self.branch = branch
        self.stderr = stderr


class PublishError(ScribeError):
    """A pull request, issue or comment could not be created."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("reason", FailureReason.PUBLISH_FAILED)
        super().__init__(message, **kwargs)
