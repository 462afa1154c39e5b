"""Claude Code subprocess adapter."""

from __future__ import annotations

from scribeswarm.adapters.base import SubprocessAdapter
from scribeswarm.config.schema import AgentConfig


class ClaudeAdapter(SubprocessAdapter):
    def __init__(self) -> None:
        super().__init__(backend="claude")

    def command(self, config: AgentConfig) -> list[str]:
        if config.command:
            return list(config.command)
        argv = [
            "claude",
            "--print",
            "--dangerously-skip-permissions",
            "--max-turns",
            str(config.max_turns),
        ]
        if config.allowed_tools:
            argv += ["--allowedTools", ",".join(config.allowed_tools)]
        # Only pass --model when the config explicitly provides one.
        if config.model:
            argv += ["--model", config.model]
        return argv
