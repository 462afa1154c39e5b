"""YAML config loader for scribeswarm."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from scribeswarm.config.schema import (
    AgentConfig,
    DecompositionConfig,
    LoggingConfig,
    OrchestratorConfig,
    PublishConfig,
    RunConfig,
)
from scribeswarm.errors import ConfigurationError

MERGE_STRATEGIES = ("single_pr", "federated")
DECOMPOSITION_STRATEGIES = ("static", "agent")
BACKENDS = ("claude", "codex", "aider", "command")


def load_config(path: str | Path | None) -> OrchestratorConfig:
    """Load *path*; a missing file yields the defaults."""
    raw: Any = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                raw = yaml.safe_load(p.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    config = OrchestratorConfig(
        version=int(raw.get("version", 1)),
        run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
        agent=AgentConfig(**_pick(_section(raw, "agent"), AgentConfig)),
        decomposition=DecompositionConfig(**_pick(_section(raw, "decomposition"), DecompositionConfig)),
        publish=PublishConfig(**_pick(_section(raw, "publish"), PublishConfig)),
        logging=LoggingConfig(**_pick(_section(raw, "logging"), LoggingConfig)),
    )
    validate_config(config)
    return config


def validate_config(config: OrchestratorConfig) -> None:
    run = config.run
    if int(run.max_concurrency) < 1:
        raise ConfigurationError(f"run.max_concurrency must be >= 1, got {run.max_concurrency}")
    if float(run.worker_timeout_seconds) <= 0:
        raise ConfigurationError("run.worker_timeout_seconds must be positive")
    if run.merge_strategy not in MERGE_STRATEGIES:
        raise ConfigurationError(
            f"run.merge_strategy must be one of {', '.join(MERGE_STRATEGIES)}, got {run.merge_strategy!r}"
        )
    decomposition = config.decomposition
    if decomposition.strategy not in DECOMPOSITION_STRATEGIES:
        raise ConfigurationError(f"Unknown decomposition.strategy: {decomposition.strategy!r}")
    if decomposition.min_tasks < 1 or decomposition.max_tasks < decomposition.min_tasks:
        raise ConfigurationError("decomposition requires 1 <= min_tasks <= max_tasks")
    if config.agent.backend.lower() not in BACKENDS:
        raise ConfigurationError(f"Unsupported agent.backend: {config.agent.backend!r}")
    if config.agent.backend.lower() == "command" and not config.agent.command:
        raise ConfigurationError("agent.backend 'command' requires agent.command")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
