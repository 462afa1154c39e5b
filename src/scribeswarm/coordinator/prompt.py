"""Worker prompt composition.

The prompt is a pure function of its inputs so a re-run of the same session
produces byte-identical ``prompt.txt`` files.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from scribeswarm.protocol.io import ensure_parent
from scribeswarm.protocol.models import RepoMetadata, Task


def commit_message(task: Task) -> str:
    return f"Fix: {task.name}"


class PromptComposer:
    def compose(
        self,
        task: Task,
        *,
        request_text: str,
        analysis: RepoMetadata,
        other_tasks: Sequence[Task],
        workspace_path: Path,
    ) -> str:
        scope = ", ".join(task.scope_paths) or "(whole repository)"
        boundaries = ", ".join(task.boundary_paths) or "(none)"
        others = "\n".join(f"- {t.name}: {t.description}" for t in other_tasks if t.id != task.id)
        sections = [
            "You are implementing one task of a larger change. Other agents are working on the",
            "remaining tasks in parallel, each in a separate copy of the repository.",
            "",
            "OVERALL REQUEST:",
            request_text.strip(),
            "",
            "TASK DETAILS:",
            f"Task ID: {task.id}",
            f"Task Name: {task.name}",
            f"Description: {task.description}",
            "",
            "YOUR SCOPE:",
            f"Focus on these directories/files: {scope}",
            f"DO NOT modify these areas: {boundaries}",
            "",
            "REPOSITORY CONTEXT:",
            f"Project Type: {analysis.type}",
            f"Frameworks: {', '.join(analysis.frameworks) or 'none detected'}",
            f"Test Framework: {analysis.test_framework}",
            "",
            "OTHER PARALLEL TASKS:",
            others or "(none)",
            "",
            "WORKING DIRECTORY:",
            str(workspace_path),
            "",
            "You are running unattended. Make the changes directly; do not reply with",
            "recommendations or ask for confirmation. The task only counts as done when",
            "the working directory contains committed changes:",
            "",
            f"1. Work inside {workspace_path}",
            "2. Read the relevant files in your scope",
            "3. Edit or create files to implement the task",
            "4. Stage everything: git add -A",
            f'5. Commit: git commit -m "{commit_message(task)}"',
            "",
        ]
        return "\n".join(sections)

    def write(self, path: Path, prompt: str) -> Path:
        ensure_parent(path)
        path.write_text(prompt, encoding="utf-8")
        return path
