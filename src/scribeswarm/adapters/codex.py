"""Codex CLI subprocess adapter."""

from __future__ import annotations

from scribeswarm.adapters.base import SubprocessAdapter
from scribeswarm.config.schema import AgentConfig


class CodexAdapter(SubprocessAdapter):
    def __init__(self) -> None:
        super().__init__(backend="codex")

    def command(self, config: AgentConfig) -> list[str]:
        if config.command:
            return list(config.command)
        argv = ["codex", "exec", "--skip-git-repo-check", "--sandbox", "workspace-write"]
        if config.model:
            argv += ["--model", config.model]
        # "-" reads the prompt from stdin
        return [*argv, "-"]
