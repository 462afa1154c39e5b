"""Shared test helpers for the scribeswarm test suite."""

from __future__ import annotations

from tests.helpers.fixtures import (
    COMMITTING_AGENT,
    RecordingHost,
    add_bare_remote,
    commit_file,
    git,
    init_repo,
    prepare_task_branches,
    write_agent,
)

__all__ = [
    "COMMITTING_AGENT",
    "RecordingHost",
    "add_bare_remote",
    "commit_file",
    "git",
    "init_repo",
    "prepare_task_branches",
    "write_agent",
]
