"""Session state persisted to ``session.json``.

Every write is a read-modify-write under an exclusive flock on
``session.lock`` followed by an atomic replace.  Callers own disjoint parts of
the document: the session manager writes the session header and the task
list, each supervisor writes only its own task/worker entry, and the
integrator writes the integration report.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from scribeswarm.errors import SessionNotFoundError
from scribeswarm.protocol.io import read_json, write_json_atomic
from scribeswarm.protocol.locks import locked_file
from scribeswarm.protocol.models import (
    IntegrationReport,
    Session,
    Task,
    Worker,
    WorkerResult,
    session_layout,
    utc_now_iso,
)

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def sessions_root(workspace_dir: Path | str) -> Path:
    return Path(workspace_dir) / "sessions"


def list_sessions(workspace_dir: Path | str) -> list[str]:
    """Session ids under *workspace_dir*, oldest first."""
    root = sessions_root(workspace_dir)
    if not root.exists():
        return []
    return sorted(p.name for p in root.iterdir() if (p / "session.json").exists())


@dataclass(slots=True)
class SessionState:
    session: Session
    tasks: list[Task] = field(default_factory=list)
    workers: dict[str, Worker] = field(default_factory=dict)
    integration: IntegrationReport | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def worker_results(self) -> list[WorkerResult]:
        return [self.workers[t.id].to_result() for t in self.tasks if t.id in self.workers]


class SessionStore:
    def __init__(self, session_dir: Path) -> None:
        self.session_dir = Path(session_dir)
        self.layout = session_layout(self.session_dir)

    @classmethod
    def for_session(cls, workspace_dir: Path | str, session_id: str) -> SessionStore:
        return cls(sessions_root(workspace_dir) / session_id)

    @property
    def state_path(self) -> Path:
        return self.layout["state"]

    def exists(self) -> bool:
        return self.state_path.exists()

    def create(self, session: Session) -> None:
        self.session_dir.mkdir(parents=True, exist_ok=True)
        with locked_file(self.layout["lock"]):
            write_json_atomic(
                self.state_path,
                {
                    "schema_version": SCHEMA_VERSION,
                    "session": session.to_dict(),
                    "tasks": {},
                    "integration": None,
                },
            )

    def save_session(self, session: Session) -> None:
        def mutate(doc: dict[str, Any]) -> None:
            doc["session"] = session.to_dict()

        self._update(mutate)

    def save_tasks(self, tasks: Iterable[Task]) -> None:
        """Register the decomposition; existing worker records are kept."""
        def mutate(doc: dict[str, Any]) -> None:
            entries = doc.setdefault("tasks", {})
            for task in tasks:
                entry = entries.setdefault(task.id, {})
                entry["task"] = task.to_dict()
                entry.setdefault("worker", None)

        self._update(mutate)

    def save_worker(self, task: Task, worker: Worker) -> None:
        def mutate(doc: dict[str, Any]) -> None:
            entry = doc.setdefault("tasks", {}).setdefault(task.id, {})
            entry["task"] = task.to_dict()
            entry["worker"] = worker.to_dict()

        self._update(mutate)

    def save_integration(self, report: IntegrationReport) -> None:
        def mutate(doc: dict[str, Any]) -> None:
            doc["integration"] = report.to_dict()

        self._update(mutate)

    def load(self) -> SessionState:
        with locked_file(self.layout["lock"], shared=True):
            doc = read_json(self.state_path, None)
        if not isinstance(doc, dict) or "session" not in doc:
            raise SessionNotFoundError(self.session_dir.name)
        tasks: list[Task] = []
        workers: dict[str, Worker] = {}
        for task_id, entry in (doc.get("tasks") or {}).items():
            if not isinstance(entry, dict) or not entry.get("task"):
                continue
            tasks.append(Task.from_dict(entry["task"]))
            if entry.get("worker"):
                workers[task_id] = Worker.from_dict(entry["worker"])
        tasks.sort(key=lambda t: t.sort_key)
        integration = doc.get("integration")
        return SessionState(
            session=Session.from_dict(doc["session"]),
            tasks=tasks,
            workers=workers,
            integration=IntegrationReport.from_dict(integration) if integration else None,
        )

    def _update(self, mutate: Callable[[dict[str, Any]], None]) -> None:
        with locked_file(self.layout["lock"]):
            doc = read_json(self.state_path, None)
            if not isinstance(doc, dict):
                raise SessionNotFoundError(self.session_dir.name)
            mutate(doc)
            doc["updated_at"] = utc_now_iso()
            write_json_atomic(self.state_path, doc)
