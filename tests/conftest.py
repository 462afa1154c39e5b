"""Global test fixtures for scribeswarm."""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from pathlib import Path

import pytest

from tests.helpers.fixtures import init_repo


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A fresh repository on ``main`` with a single commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    return init_repo(tmp_path / "repo")


@pytest.fixture(autouse=True)
def _quiet_git_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep the developer's own git config out of test repositories.
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Dev")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "dev@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Dev")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "dev@example.com")


@pytest.fixture(autouse=True)
def _reset_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
