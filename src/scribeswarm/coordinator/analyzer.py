"""Read-only repository analysis used to ground decomposition and prompts."""

from __future__ import annotations

import logging
from pathlib import Path

from scribeswarm.errors import GitCommandError
from scribeswarm.protocol.models import RepoMetadata
from scribeswarm.workspace.git import GitRepo

log = logging.getLogger(__name__)

# (marker files, project type); later matches win, so a Go module with a
# package.json for tooling is reported as go.
_PROJECT_MARKERS: list[tuple[tuple[str, ...], str]] = [
    (("package.json",), "nodejs"),
    (("requirements.txt", "setup.py", "pyproject.toml"), "python"),
    (("go.mod",), "go"),
    (("Cargo.toml",), "rust"),
    (("pom.xml", "build.gradle"), "java"),
    (("Gemfile",), "ruby"),
]

# manifest -> [(needle, framework)]
_FRAMEWORK_NEEDLES: dict[str, list[tuple[str, str]]] = {
    "package.json": [('"react"', "react"), ('"vue"', "vue"), ('"express"', "express"), ('"next"', "nextjs")],
    "requirements.txt": [("django", "django"), ("flask", "flask"), ("fastapi", "fastapi")],
    "pyproject.toml": [("django", "django"), ("flask", "flask"), ("fastapi", "fastapi")],
    "pom.xml": [("<artifactId>spring-boot", "spring-boot")],
    "Gemfile": [("rails", "rails")],
}

_JS_TEST_FRAMEWORKS = ("jest", "mocha", "vitest", "cypress")

_DIRECTORY_PURPOSES: dict[str, str] = {
    **dict.fromkeys(("src", "source"), "source_code"),
    **dict.fromkeys(("test", "tests", "spec", "specs"), "tests"),
    **dict.fromkeys(("doc", "docs", "documentation"), "documentation"),
    **dict.fromkeys(("lib", "libs", "library", "libraries"), "libraries"),
    "api": "api",
    **dict.fromkeys(("frontend", "client", "web", "ui"), "frontend"),
    **dict.fromkeys(("backend", "server"), "backend"),
    **dict.fromkeys(("config", "conf", "configuration"), "configuration"),
    **dict.fromkeys(("scripts", "bin"), "scripts"),
    **dict.fromkeys(("public", "static", "assets"), "static_assets"),
    **dict.fromkeys(("database", "db", "migrations"), "database"),
    "models": "models",
    "controllers": "controllers",
    **dict.fromkeys(("views", "templates"), "views"),
    "components": "components",
    "services": "services",
    **dict.fromkeys(("utils", "utilities", "helpers"), "utilities"),
}

_IGNORED_DIRS = frozenset({"node_modules", "venv", ".venv", "__pycache__", "dist", "build", "target", "vendor"})

_CONFIG_FILES = (
    ".env.example",
    "config.json", "config.yaml", "config.yml", "config.toml",
    "settings.json", "settings.yaml", "settings.yml",
    "tsconfig.json", "jsconfig.json",
    ".eslintrc", ".prettierrc",
    "Dockerfile", "docker-compose.yml",
    "Makefile", "Rakefile",
    ".github/workflows",
)


class RepoAnalyzer:
    def __init__(self, max_depth: int = 2) -> None:
        self.max_depth = max_depth

    def analyze(self, repo_path: Path) -> RepoMetadata:
        root = Path(repo_path)
        project_type, frameworks = self.detect_project_type(root)
        meta = RepoMetadata(
            type=project_type,
            frameworks=frameworks,
            test_framework=self.detect_test_framework(root),
            directories=self.analyze_directories(root),
            config_files=[c for c in _CONFIG_FILES if (root / c).exists()],
        )
        git = GitRepo(root)
        try:
            meta.remote = git.remote_url()
            meta.branch = git.current_branch()
            meta.commit_count = int(git.out("rev-list", "--count", "HEAD") or 0)
        except GitCommandError as exc:
            log.debug("Git metadata unavailable for %s: %s", root, exc)
        log.info(
            "Analyzed %s: type=%s frameworks=%s tests=%s",
            root, meta.type, ",".join(meta.frameworks) or "-", meta.test_framework,
        )
        return meta

    def detect_project_type(self, root: Path) -> tuple[str, list[str]]:
        project_type = "unknown"
        for markers, kind in _PROJECT_MARKERS:
            if any((root / m).is_file() for m in markers):
                project_type = kind
        frameworks: list[str] = []
        for manifest, needles in _FRAMEWORK_NEEDLES.items():
            text = _read(root / manifest)
            if not text:
                continue
            lowered = text.lower() if manifest != "package.json" else text
            for needle, name in needles:
                if needle in lowered and name not in frameworks:
                    frameworks.append(name)
        return project_type, frameworks

    def detect_test_framework(self, root: Path) -> str:
        framework = "unknown"
        package_json = _read(root / "package.json")
        for name in _JS_TEST_FRAMEWORKS:
            if f'"{name}"' in package_json:
                framework = name
                break
        python_manifests = _read(root / "requirements.txt") + _read(root / "pyproject.toml")
        if (root / "pytest.ini").is_file() or "pytest" in python_manifests or "py.test" in python_manifests:
            framework = "pytest"
        elif "unittest" in python_manifests:
            framework = "unittest"
        if (root / "go.mod").is_file() and next(root.rglob("*_test.go"), None) is not None:
            framework = "go-test"
        return framework

    def analyze_directories(self, root: Path) -> dict[str, str]:
        found: dict[str, str] = {}

        def walk(directory: Path, depth: int) -> None:
            if depth > self.max_depth:
                return
            for child in sorted(directory.iterdir()):
                if not child.is_dir() or child.name.startswith(".") or child.name in _IGNORED_DIRS:
                    continue
                purpose = _DIRECTORY_PURPOSES.get(child.name)
                if purpose:
                    found[child.relative_to(root).as_posix()] = purpose
                walk(child, depth + 1)

        if root.is_dir():
            walk(root, 1)
        return found


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace") if path.is_file() else ""
    except OSError:
        return ""
