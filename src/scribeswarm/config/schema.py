"""Configuration schema for scribeswarm YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    workspace_dir: str = ".scribe"
    base_branch: str = "main"
    max_concurrency: int = 3
    worker_timeout_seconds: float = 1800.0
    merge_strategy: str = "single_pr"  # single_pr | federated
    auto_publish: bool = True
    cancel_grace_seconds: float = 5.0


@dataclass(slots=True)
class AgentConfig:
    backend: str = "claude"  # claude | codex | aider | command
    model: str = ""  # empty string = use the tool's own default model
    command: list[str] | None = None
    max_turns: int = 30
    allowed_tools: list[str] = field(
        default_factory=lambda: ["Bash", "Read", "Edit", "Write", "Grep", "Glob", "LS", "MultiEdit"]
    )
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class DecompositionConfig:
    strategy: str = "static"  # static | agent
    min_tasks: int = 1
    max_tasks: int = 8
    template_path: str = ""
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class PublishConfig:
    remote: str = "origin"
    host: str = "github"
    draft: bool = False
    link_issues: bool = True
    boundary_check: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "info"
    json: bool = False


@dataclass(slots=True)
class OrchestratorConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    decomposition: DecompositionConfig = field(default_factory=DecompositionConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
