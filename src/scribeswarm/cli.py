"""CLI entrypoint for scribeswarm."""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.table import Table

from scribeswarm.adapters.registry import get_adapter
from scribeswarm.config.loader import load_config
from scribeswarm.config.schema import OrchestratorConfig
from scribeswarm.coordinator.event_bus import load_events
from scribeswarm.coordinator.feedback import extract_feedback_tasks
from scribeswarm.coordinator.session import SessionManager
from scribeswarm.coordinator.store import SessionState, SessionStore
from scribeswarm.errors import ScribeError
from scribeswarm.hosting.registry import get_host
from scribeswarm.logging_setup import setup_logging
from scribeswarm.protocol.models import Session, SessionStatus
from scribeswarm.workspace.git import GitRepo
from scribeswarm.workspace.worktree import INTEGRATION_DIR, branch_name, integration_branch_name

logger = logging.getLogger(__name__)

EXIT_CODES = {
    SessionStatus.COMPLETED: 0,
    SessionStatus.FAILED: 1,
    SessionStatus.PARTIAL_FAILURE: 2,
    SessionStatus.INTERRUPTED: 130,
}

DEFAULT_CONFIG = """\
version: 1
run:
  workspace_dir: .scribe
  base_branch: main
  max_concurrency: 3
  worker_timeout_seconds: 1800
  merge_strategy: single_pr   # single_pr | federated
  auto_publish: true
agent:
  backend: claude             # claude | codex | aider | command
  model: ""
  max_turns: 30
decomposition:
  strategy: static            # static | agent
  max_tasks: 8
publish:
  remote: origin
  draft: false
  link_issues: true
logging:
  level: info
"""


def _config_option(fn: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--config",
        "config_path",
        type=click.Path(dir_okay=False, path_type=Path),
        default="scribeswarm.yaml",
        show_default=True,
        help="YAML config file (defaults apply when it does not exist)",
    )(fn)


def _load(config_path: Path, debug: bool = False) -> OrchestratorConfig:
    try:
        cfg = load_config(config_path)
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    setup_logging(level=cfg.logging.level, debug=debug, json_output=cfg.logging.json)
    return cfg


@click.group()
def main() -> None:
    """scribeswarm: run coding agents in parallel and merge their work."""


async def _execute_with_signals(manager: SessionManager, request_text: str, repository_ref: str, **overrides: Any) -> Session:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, manager.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Cannot install handler for %s", sig)
    try:
        return await manager.execute(request_text, repository_ref, **overrides)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


@main.command("run")
@click.argument("request", nargs=-1)
@_config_option
@click.option("--repo", "repository_ref", default=".", show_default=True, help="Local path or clone URL")
@click.option("--base-branch", default=None, help="Override run.base_branch")
@click.option("--strategy", type=click.Choice(["single_pr", "federated"]), default=None)
@click.option("--max-workers", type=click.IntRange(min=1), default=None)
@click.option("--timeout", "worker_timeout", type=float, default=None, help="Per-worker timeout in seconds")
@click.option("--no-publish", is_flag=True, help="Stop after workers finish; publish later")
@click.option("--draft", is_flag=True, help="Open pull requests as drafts")
@click.option("--debug", "debug_flag", is_flag=True)
def run_command(
    request: tuple[str, ...],
    config_path: Path,
    repository_ref: str,
    base_branch: str | None,
    strategy: str | None,
    max_workers: int | None,
    worker_timeout: float | None,
    no_publish: bool,
    draft: bool,
    debug_flag: bool,
) -> None:
    """Decompose REQUEST, run workers and integrate their branches."""
    cfg = _load(config_path, debug_flag)
    request_text = " ".join(request).strip()
    if not request_text:
        raise click.ClickException("Request text is required")
    if no_publish:
        cfg.run.auto_publish = False
    if draft:
        cfg.publish.draft = True

    manager = SessionManager(cfg)
    try:
        session = asyncio.run(
            _execute_with_signals(
                manager,
                request_text,
                repository_ref,
                base_branch=base_branch,
                merge_strategy=strategy,
                max_concurrency=max_workers,
                worker_timeout=worker_timeout,
            )
        )
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc

    state = manager.load(session.id)
    _print_state(state)
    raise SystemExit(EXIT_CODES.get(session.status, 1))


@main.command("publish")
@click.argument("session_id")
@_config_option
@click.option("--strategy", type=click.Choice(["single_pr", "federated"]), default=None)
@click.option("--draft", is_flag=True)
def publish_command(session_id: str, config_path: Path, strategy: str | None, draft: bool) -> None:
    """(Re)publish a session's completed work; repeat runs are no-ops."""
    cfg = _load(config_path)
    if draft:
        cfg.publish.draft = True
    manager = SessionManager(cfg)
    try:
        report = manager.publish(session_id, strategy)
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    for result in report.results:
        label = result.task_id or "tracking"
        click.echo(f"{label}: {result.outcome} {result.published_ref or result.detail}".rstrip())
    if report.reused_existing and not report.pushed:
        click.echo("No changes since last publish.")
    click.echo(f"artifact={report.artifact_ref or '-'} success={report.success}")
    raise SystemExit(0 if report.success else 1)


@main.command("status")
@click.argument("session_id", required=False)
@_config_option
def status_command(session_id: str | None, config_path: Path) -> None:
    """Show task, worker and integration state (latest session by default)."""
    cfg = _load(config_path)
    manager = SessionManager(cfg)
    try:
        state = manager.load(session_id or manager.latest_session_id())
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_state(state)


@main.command("inspect")
@click.argument("session_id")
@_config_option
@click.option("--tail", default=30, help="How many recent events to show")
@click.option("--task", "task_id", default=None, help="Filter by task id")
@click.option("--type", "event_type", default=None, help="Filter by event type prefix")
def inspect_command(session_id: str, config_path: Path, tail: int, task_id: str | None, event_type: str | None) -> None:
    """Print recent session events."""
    cfg = _load(config_path)
    store = SessionStore.for_session(cfg.run.workspace_dir, session_id)
    if not store.layout["events"].exists():
        click.echo("No events.jsonl yet")
        return
    events = load_events(store.layout["events"])
    if task_id:
        events = [e for e in events if e.task_id == task_id]
    if event_type:
        events = [e for e in events if e.event_type.startswith(event_type)]
    for event in events[-max(tail, 1):]:
        data = " ".join(f"{k}={v}" for k, v in event.data.items() if v not in ("", None))
        click.echo(f"{event.timestamp:.3f} {event.event_type} {event.task_id or '-'} {data} {event.message}".rstrip())


@main.command("branches")
@click.argument("session_id")
@_config_option
def branches_command(session_id: str, config_path: Path) -> None:
    """List the session's worker and integration branches."""
    cfg = _load(config_path)
    manager = SessionManager(cfg)
    try:
        state = manager.load(session_id)
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    repo = GitRepo(state.session.repo_path)
    worktrees = SessionStore.for_session(cfg.run.workspace_dir, session_id).layout["worktrees"]
    rows = [(t.id, branch_name(session_id, t.id), worktrees / t.id) for t in state.tasks]
    rows.append(("integration", integration_branch_name(session_id), worktrees / INTEGRATION_DIR))
    for label, branch, path in rows:
        exists = repo.branch_exists(branch) if repo.root.exists() else False
        click.echo(f"{label:<16} {branch:<48} {'present' if exists else 'missing':<8} {path}")


@main.command("cleanup")
@click.argument("session_id")
@_config_option
@click.option("--delete-branches", is_flag=True, help="Also delete local worker branches")
def cleanup_command(session_id: str, config_path: Path, delete_branches: bool) -> None:
    """Remove the session's worktrees (logs and state are kept)."""
    cfg = _load(config_path)
    try:
        removed = SessionManager(cfg).cleanup(session_id, delete_branches=delete_branches)
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Removed {len(removed)} worktree(s)")


@main.command("feedback")
@click.argument("pr_ref")
@_config_option
@click.option("--repo", "repo_path", default=".", type=click.Path(file_okay=False, path_type=Path))
@click.option("--output", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the tasks as a template usable by decomposition.template_path")
def feedback_command(pr_ref: str, config_path: Path, repo_path: Path, output: Path | None) -> None:
    """Turn review comments on PR_REF into follow-up tasks."""
    cfg = _load(config_path)
    host = get_host(cfg.publish.host, remote=cfg.publish.remote)
    try:
        comments = host.list_pr_comments(GitRepo(repo_path), pr_ref)
    except ScribeError as exc:
        raise click.ClickException(str(exc)) from exc
    tasks = extract_feedback_tasks(comments)
    if not tasks:
        click.echo("No actionable comments found.")
        return
    for task in tasks:
        click.echo(f"[{task.metadata['category']}] {task.id} p{task.priority} {task.name}")
    if output is not None:
        template = {
            "tasks": [
                {
                    "id": t.id,
                    "name": t.name,
                    "description": t.description,
                    "scope": list(t.scope_paths),
                    "boundaries": list(t.boundary_paths),
                    "priority": t.priority,
                }
                for t in tasks
            ]
        }
        output.write_text(yaml.safe_dump(template, sort_keys=False), encoding="utf-8")
        click.echo(f"Wrote {len(tasks)} task(s) to {output}")


def _doctor_rows(cfg: OrchestratorConfig) -> list[dict[str, Any]]:
    agent_binary = get_adapter(cfg.agent.backend).command(cfg.agent)[0]
    checks = [("git", "git", "worktrees and integration"), ("agent", agent_binary, f"backend {cfg.agent.backend}")]
    if cfg.run.auto_publish and cfg.publish.host == "github":
        checks.append(("host", "gh", "pull requests and issues"))
    rows: list[dict[str, Any]] = []
    for name, binary, purpose in checks:
        found = shutil.which(binary) is not None
        rows.append({
            "check": name,
            "binary": binary,
            "ok": found,
            "details": purpose if found else f"missing binary `{binary}`",
        })
    return rows


@main.command("doctor")
@_config_option
def doctor_command(config_path: Path) -> None:
    """Check that git, the agent CLI and gh are available."""
    cfg = _load(config_path)
    all_ok = True
    for row in _doctor_rows(cfg):
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['check']}: {row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    raise SystemExit(0 if all_ok else 1)


@main.command("init")
@click.argument("target", type=click.Path(dir_okay=False, path_type=Path), default="scribeswarm.yaml")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init_command(target: Path, force: bool) -> None:
    """Write a starter config file."""
    if target.exists() and not force:
        raise click.ClickException(f"{target} already exists (use --force to overwrite)")
    target.write_text(DEFAULT_CONFIG, encoding="utf-8")
    click.echo(f"Wrote {target}")


def _print_state(state: SessionState) -> None:
    session = state.session
    console = Console()
    console.print(f"[bold]Session {session.id}[/bold]  status={session.status}  strategy={session.merge_strategy}")
    if session.failure_detail:
        console.print(f"  {session.failure_reason or ''} {session.failure_detail}".rstrip())

    table = Table(show_header=True, header_style="bold")
    for column in ("task", "priority", "worker", "commits", "files", "reason", "merge", "ref"):
        table.add_column(column)
    for task in state.tasks:
        worker = state.workers.get(task.id)
        merge = state.integration.for_task(task.id) if state.integration else None
        table.add_row(
            f"{task.id} {task.name}",
            str(task.priority),
            str(worker.status) if worker else str(task.status),
            str(worker.commit_count) if worker else "",
            str(worker.modified_file_count) if worker else "",
            (str(worker.failure_reason or "") + (f" ({worker.failure_detail})" if worker.failure_detail else "")) if worker else "",
            str(merge.outcome) if merge else "",
            merge.published_ref if merge else "",
        )
    console.print(table)
    if state.integration and state.integration.artifact_ref:
        console.print(f"artifact: {state.integration.artifact_ref}")
