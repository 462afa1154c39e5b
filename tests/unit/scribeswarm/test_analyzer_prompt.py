from __future__ import annotations

from pathlib import Path

from scribeswarm.coordinator.analyzer import RepoAnalyzer
from scribeswarm.coordinator.prompt import PromptComposer, commit_message
from scribeswarm.protocol.models import RepoMetadata, Task
from tests.helpers.fixtures import init_repo


def test_analyzer_detects_python_project(tmp_path: Path) -> None:
    root = init_repo(
        tmp_path / "proj",
        {
            "pyproject.toml": '[project]\ndependencies = ["fastapi"]\n[tool.pytest.ini_options]\n',
            "src/app/__init__.py": "",
            "tests/test_app.py": "",
            "docs/index.md": "# docs\n",
            "node_modules/x/index.js": "",
            "Makefile": "all:\n",
        },
    )
    meta = RepoAnalyzer().analyze(root)
    assert meta.type == "python"
    assert meta.frameworks == ["fastapi"]
    assert meta.test_framework == "pytest"
    assert meta.directories["src"] == "source_code"
    assert meta.directories["tests"] == "tests"
    assert "node_modules" not in meta.directories
    assert meta.config_files == ["Makefile"]
    assert meta.branch == "main"
    assert meta.commit_count == 1


def test_analyzer_later_marker_wins(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text('{"devDependencies": {"jest": "1"}}', encoding="utf-8")
    (tmp_path / "go.mod").write_text("module x\n", encoding="utf-8")
    project_type, _ = RepoAnalyzer().detect_project_type(tmp_path)
    assert project_type == "go"
    assert RepoAnalyzer().detect_test_framework(tmp_path) == "jest"


def test_analyzer_tolerates_non_git_directory(tmp_path: Path) -> None:
    meta = RepoAnalyzer().analyze(tmp_path)
    assert meta.type == "unknown"
    assert meta.commit_count == 0


def _tasks() -> list[Task]:
    return [
        Task(id="t1", name="API", description="Add endpoint", scope_paths=("api/",), boundary_paths=("ui/",)),
        Task(id="t2", name="UI", description="Add page"),
    ]


def test_prompt_is_deterministic_and_complete(tmp_path: Path) -> None:
    composer = PromptComposer()
    tasks = _tasks()
    kwargs = dict(
        request_text="Add user export",
        analysis=RepoMetadata(type="python", frameworks=["flask"], test_framework="pytest"),
        other_tasks=tasks,
        workspace_path=tmp_path / "wt",
    )
    first = composer.compose(tasks[0], **kwargs)  # type: ignore[arg-type]
    assert first == composer.compose(tasks[0], **kwargs)  # type: ignore[arg-type]
    assert "Add user export" in first
    assert "Focus on these directories/files: api/" in first
    assert "DO NOT modify these areas: ui/" in first
    assert "- UI: Add page" in first
    assert "- API:" not in first
    assert str(tmp_path / "wt") in first
    assert f'git commit -m "{commit_message(tasks[0])}"' in first


def test_prompt_write_creates_parent(tmp_path: Path) -> None:
    path = PromptComposer().write(tmp_path / "workers" / "t1" / "prompt.txt", "hi")
    assert path.read_text(encoding="utf-8") == "hi"
