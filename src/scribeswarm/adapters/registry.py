"""Adapter registry for built-in backends."""

from __future__ import annotations

from scribeswarm.adapters.aider import AiderAdapter
from scribeswarm.adapters.base import AgentAdapter, SubprocessAdapter
from scribeswarm.adapters.claude import ClaudeAdapter
from scribeswarm.adapters.codex import CodexAdapter


def get_adapter(backend: str, *, grace_seconds: float | None = None) -> AgentAdapter:
    b = backend.lower()
    adapter: SubprocessAdapter
    if b == "claude":
        adapter = ClaudeAdapter()
    elif b == "codex":
        adapter = CodexAdapter()
    elif b == "aider":
        adapter = AiderAdapter()
    elif b == "command":
        adapter = SubprocessAdapter(backend="command")
    else:
        raise ValueError(f"Unsupported backend: {backend}")
    if grace_seconds is not None:
        adapter.grace_seconds = grace_seconds
    return adapter
