"""Turn a request into independent tasks.

Two strategies are available, picked by ``decomposition.strategy``:

``static``
    Tasks come from a YAML/JSON template file, or the built-in
    backend / frontend / tests split when no template is configured.
``agent``
    The configured agent CLI is asked for a JSON array of tasks.

Either way the result is validated the same way: ids must be unique, there
must be at least ``min_tasks`` tasks, and anything past ``max_tasks`` is
dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

import yaml

from scribeswarm.adapters.base import SubprocessAdapter, agent_environment
from scribeswarm.adapters.registry import get_adapter
from scribeswarm.config.schema import AgentConfig, DecompositionConfig
from scribeswarm.errors import DecompositionEmptyError, DecompositionError
from scribeswarm.protocol.models import RepoMetadata, Task

log = logging.getLogger(__name__)

DEFAULT_TEMPLATE: list[dict[str, Any]] = [
    {
        "id": "task-001",
        "name": "Backend API Implementation",
        "description": "Implement backend API endpoints for the feature",
        "scope": ["backend/", "api/"],
        "boundaries": ["frontend/", "tests/"],
        "priority": 1,
    },
    {
        "id": "task-002",
        "name": "Frontend UI Components",
        "description": "Create frontend UI components",
        "scope": ["frontend/components/", "frontend/views/"],
        "boundaries": ["backend/", "api/"],
        "priority": 2,
    },
    {
        "id": "task-003",
        "name": "Tests and Documentation",
        "description": "Write tests and update documentation",
        "scope": ["tests/", "docs/"],
        "boundaries": ["backend/", "frontend/"],
        "priority": 3,
    },
]


class Decomposer(Protocol):
    async def decompose(self, request_text: str, analysis: RepoMetadata) -> list[Task]: ...


def _first(item: dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in item and item[key] not in (None, ""):
            return item[key]
    return default


def tasks_from_payload(items: list[Any]) -> list[Task]:
    """Build tasks from loosely-keyed dicts, keeping their order."""
    tasks: list[Task] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise DecompositionError(f"Task entry {index} is not an object: {item!r}")
        task_id = _first(item, "id", "task_id")
        if not task_id:
            raise DecompositionError(f"Task entry {index} has no id")
        tasks.append(
            Task(
                id=str(task_id),
                name=str(_first(item, "name", "title", default=task_id)),
                description=str(item.get("description", "")),
                scope_paths=tuple(_first(item, "scope", "scope_paths", "target_files", default=[])),
                boundary_paths=tuple(_first(item, "boundaries", "boundary_paths", default=[])),
                priority=int(_first(item, "priority", default=index + 1)),
                order=index,
            )
        )
    return tasks


def validate_tasks(tasks: list[Task], *, min_tasks: int = 1, max_tasks: int | None = None) -> list[Task]:
    if not tasks:
        raise DecompositionEmptyError()
    ids = [t.id for t in tasks]
    duplicates = sorted({i for i in ids if ids.count(i) > 1})
    if duplicates:
        raise DecompositionError(f"Duplicate task ids: {', '.join(duplicates)}")
    if max_tasks is not None and len(tasks) > max_tasks:
        log.warning("Decomposition returned %d tasks; keeping the first %d", len(tasks), max_tasks)
        tasks = tasks[:max_tasks]
    if len(tasks) < min_tasks:
        raise DecompositionError(f"Decomposition returned {len(tasks)} task(s), fewer than min_tasks={min_tasks}")
    return tasks


def parse_task_json(raw: str) -> list[Task]:
    """Extract the first JSON array from agent output."""
    text = re.sub(r"<thinking>.*?</thinking>", "", raw.strip(), flags=re.DOTALL)
    text = re.sub(r"```(?:json|JSON)?\s*\n?", "", text).strip()
    match = re.search(r"\[.*\]", text, flags=re.DOTALL)
    if not match:
        raise DecompositionError(f"No JSON array found in output ({len(raw)} chars)")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise DecompositionError(f"Invalid task JSON: {exc}") from exc
    if isinstance(data, dict):
        data = data.get("tasks", [])
    return tasks_from_payload(data)


class StaticTemplateDecomposer:
    def __init__(
        self,
        template_path: str | Path | None = None,
        *,
        min_tasks: int = 1,
        max_tasks: int | None = None,
    ) -> None:
        self.template_path = Path(template_path) if template_path else None
        self.min_tasks = min_tasks
        self.max_tasks = max_tasks

    def load_template(self) -> list[Any]:
        if self.template_path is None:
            return [dict(item) for item in DEFAULT_TEMPLATE]
        try:
            raw = yaml.safe_load(self.template_path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise DecompositionError(f"Cannot read task template {self.template_path}: {exc}") from exc
        if isinstance(raw, dict):
            raw = raw.get("tasks", [])
        if not isinstance(raw, list):
            raise DecompositionError(f"Task template {self.template_path} must contain a list of tasks")
        return raw

    async def decompose(self, request_text: str, analysis: RepoMetadata) -> list[Task]:
        tasks = tasks_from_payload(self.load_template())
        return validate_tasks(tasks, min_tasks=self.min_tasks, max_tasks=self.max_tasks)


class AgentBackedDecomposer:
    """Ask the agent CLI for a task list; retry once with a shorter prompt."""

    def __init__(
        self,
        agent: AgentConfig,
        *,
        cwd: Path | None = None,
        min_tasks: int = 1,
        max_tasks: int = 8,
        timeout: float = 300.0,
        grace_seconds: float = 5.0,
        runner: Callable[[str], Awaitable[str]] | None = None,
    ) -> None:
        self.agent = agent
        self.cwd = cwd
        self.min_tasks = min_tasks
        self.max_tasks = max_tasks
        self.timeout = timeout
        self.grace_seconds = grace_seconds
        self._runner = runner or self._run_agent

    def build_prompt(self, request_text: str, analysis: RepoMetadata) -> str:
        directories = "\n".join(f"  - {path}: {purpose}" for path, purpose in analysis.directories.items())
        return (
            "You are a task decomposition engine for parallel coding agents.\n\n"
            "Split the request below into independent tasks. Each task runs in its own\n"
            "git worktree with no knowledge of the others' changes, so tasks must not\n"
            "edit the same files.\n\n"
            f"## Request\n{request_text}\n\n"
            "## Repository\n"
            f"- Type: {analysis.type}\n"
            f"- Frameworks: {', '.join(analysis.frameworks) or 'none detected'}\n"
            f"- Test framework: {analysis.test_framework}\n"
            f"- Directories:\n{directories or '  (none detected)'}\n\n"
            "## Constraints\n"
            f"- Produce between {self.min_tasks} and {self.max_tasks} tasks.\n"
            "- scope lists the paths a task may change; boundaries lists paths it must not touch.\n"
            "- priority is an integer, 1 = most important.\n\n"
            "## Output Format\n"
            "Respond with ONLY a JSON array (no markdown fences, no explanation):\n"
            "[\n"
            "  {\n"
            '    "id": "task-001",\n'
            '    "name": "Short title",\n'
            '    "description": "What to do",\n'
            '    "scope": ["src/api/"],\n'
            '    "boundaries": ["src/ui/"],\n'
            '    "priority": 1\n'
            "  }\n"
            "]\n"
        )

    def build_retry_prompt(self, request_text: str) -> str:
        return (
            f"Split this request into 1-{self.max_tasks} independent coding tasks. "
            "Return ONLY a JSON array.\n\n"
            f"Request: {request_text}\n\n"
            'Format: [{"id": "task-001", "name": "...", "description": "...", '
            '"scope": [], "boundaries": [], "priority": 1}]'
        )

    async def decompose(self, request_text: str, analysis: RepoMetadata) -> list[Task]:
        try:
            tasks = parse_task_json(await self._runner(self.build_prompt(request_text, analysis)))
            return validate_tasks(tasks, min_tasks=self.min_tasks, max_tasks=self.max_tasks)
        except (DecompositionError, RuntimeError, TimeoutError) as exc:
            log.warning("Decomposition attempt 1 failed: %s", exc)

        try:
            tasks = parse_task_json(await self._runner(self.build_retry_prompt(request_text)))
        except (RuntimeError, TimeoutError) as exc:
            raise DecompositionError(f"Agent decomposition failed: {exc}") from exc
        return validate_tasks(tasks, min_tasks=self.min_tasks, max_tasks=self.max_tasks)

    async def _run_agent(self, prompt: str) -> str:
        argv = get_adapter(self.agent.backend).command(self.agent)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd else None,
            env=agent_environment(self.agent.env),
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")), timeout=self.timeout
            )
        except (TimeoutError, asyncio.CancelledError):
            # The agent may have forked; take down its whole process group.
            await SubprocessAdapter(self.agent.backend, grace_seconds=self.grace_seconds).terminate(proc)
            raise
        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace")[:500]
            raise RuntimeError(f"Decomposition subprocess exited {proc.returncode}: {detail}")
        return (stdout or b"").decode("utf-8", errors="replace")


def build_decomposer(
    config: DecompositionConfig,
    agent: AgentConfig,
    *,
    cwd: Path | None = None,
    grace_seconds: float = 5.0,
) -> Decomposer:
    if config.strategy == "agent":
        return AgentBackedDecomposer(
            agent,
            cwd=cwd,
            min_tasks=config.min_tasks,
            max_tasks=config.max_tasks,
            timeout=config.timeout_seconds,
            grace_seconds=grace_seconds,
        )
    if config.strategy == "static":
        return StaticTemplateDecomposer(
            config.template_path or None,
            min_tasks=config.min_tasks,
            max_tasks=config.max_tasks,
        )
    raise ValueError(f"Unknown decomposition strategy: {config.strategy}")
