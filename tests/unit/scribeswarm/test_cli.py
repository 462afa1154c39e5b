from __future__ import annotations

from pathlib import Path

import yaml
from click.testing import CliRunner

from scribeswarm.cli import DEFAULT_CONFIG, main
from scribeswarm.coordinator.store import list_sessions
from tests.helpers.fixtures import COMMITTING_AGENT, write_agent


def _write_config(tmp_path: Path, **run: object) -> Path:
    template = tmp_path / "tasks.yaml"
    template.write_text(
        "tasks:\n"
        "  - id: t1\n    name: Add exporter\n    scope: [out/]\n"
        "  - id: t2\n    name: Document exporter\n    priority: 2\n",
        encoding="utf-8",
    )
    doc = {
        "run": {"workspace_dir": str(tmp_path / ".scribe"), "max_concurrency": 2, "auto_publish": False, **run},
        "agent": {"backend": "command", "command": write_agent(tmp_path / "agent.sh", COMMITTING_AGENT)},
        "decomposition": {"strategy": "static", "template_path": str(template)},
        "logging": {"level": "warning"},
    }
    path = tmp_path / "scribeswarm.yaml"
    path.write_text(yaml.safe_dump(doc), encoding="utf-8")
    return path


def test_init_writes_loadable_config(tmp_path: Path) -> None:
    target = tmp_path / "scribeswarm.yaml"
    runner = CliRunner()
    result = runner.invoke(main, ["init", str(target)])
    assert result.exit_code == 0
    assert target.read_text(encoding="utf-8") == DEFAULT_CONFIG
    assert yaml.safe_load(DEFAULT_CONFIG)["run"]["merge_strategy"] == "single_pr"

    again = runner.invoke(main, ["init", str(target)])
    assert again.exit_code == 1
    assert "already exists" in again.output
    assert runner.invoke(main, ["init", str(target), "--force"]).exit_code == 0


def test_doctor_fails_when_binary_missing(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr("shutil.which", lambda _: None)
    result = CliRunner().invoke(main, ["doctor", "--config", str(tmp_path / "absent.yaml")])
    assert result.exit_code == 1
    assert "[FAIL] git" in result.output
    assert "[FAIL] agent: claude" in result.output
    assert "[FAIL] host: gh" in result.output


def test_doctor_passes_when_everything_is_found(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}")
    result = CliRunner().invoke(main, ["doctor", "--config", str(_write_config(tmp_path))])
    assert result.exit_code == 0
    assert "[FAIL]" not in result.output
    assert "host" not in result.output


def test_run_requires_request_text(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["run", "--config", str(_write_config(tmp_path))])
    assert result.exit_code == 1
    assert "Request text is required" in result.output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("run:\n  merge_strategy: octopus\n", encoding="utf-8")
    result = CliRunner().invoke(main, ["status", "--config", str(bad)])
    assert result.exit_code == 1
    assert "run.merge_strategy" in result.output


def test_status_without_sessions(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["status", "--config", str(_write_config(tmp_path))])
    assert result.exit_code == 1
    assert "Session not found" in result.output


def test_publish_unknown_session(tmp_path: Path) -> None:
    result = CliRunner().invoke(main, ["publish", "nope", "--config", str(_write_config(tmp_path))])
    assert result.exit_code == 1
    assert "Session not found: nope" in result.output


def test_run_then_inspect_branches_and_cleanup(repo: Path, tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    runner = CliRunner()
    result = runner.invoke(
        main, ["run", "Add", "an", "exporter", "--repo", str(repo), "--config", str(config), "--no-publish"]
    )
    assert result.exit_code == 0, result.output
    assert "status=completed" in result.output

    (session_id,) = list_sessions(tmp_path / ".scribe")

    status = runner.invoke(main, ["status", "--config", str(config)])
    assert status.exit_code == 0
    assert session_id in status.output

    inspect = runner.invoke(main, ["inspect", session_id, "--config", str(config), "--task", "t1"])
    assert inspect.exit_code == 0
    assert "worker.transition t1" in inspect.output
    assert " t2 " not in inspect.output

    only_sessions = runner.invoke(main, ["inspect", session_id, "--config", str(config), "--type", "session."])
    assert "session.transition" in only_sessions.output
    assert "worker." not in only_sessions.output

    branches = runner.invoke(main, ["branches", session_id, "--config", str(config)])
    assert f"scribe/{session_id}/t1" in branches.output
    assert "present" in branches.output

    cleanup = runner.invoke(main, ["cleanup", session_id, "--config", str(config), "--delete-branches"])
    assert cleanup.exit_code == 0
    assert "Removed 2 worktree(s)" in cleanup.output
    assert not (tmp_path / ".scribe" / "sessions" / session_id / "worktrees" / "t1").exists()
    assert (tmp_path / ".scribe" / "sessions" / session_id / "session.json").exists()


def test_run_with_failing_agent_exits_one(repo: Path, tmp_path: Path) -> None:
    config = _write_config(tmp_path)
    write_agent(tmp_path / "agent.sh", "cat > /dev/null\nexit 3\n")
    result = CliRunner().invoke(main, ["run", "Break", "--repo", str(repo), "--config", str(config)])
    assert result.exit_code == 1
    assert "status=failed" in result.output
    assert "agent_error" in result.output
