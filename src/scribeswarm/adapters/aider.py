"""Aider subprocess adapter."""

from __future__ import annotations

from scribeswarm.adapters.base import SubprocessAdapter
from scribeswarm.config.schema import AgentConfig


class AiderAdapter(SubprocessAdapter):
    def __init__(self) -> None:
        super().__init__(backend="aider")

    def command(self, config: AgentConfig) -> list[str]:
        if config.command:
            return list(config.command)
        argv = ["aider", "--yes-always", "--no-auto-commits", "--message-file", "/dev/stdin"]
        if config.model:
            argv += ["--model", config.model]
        return argv
