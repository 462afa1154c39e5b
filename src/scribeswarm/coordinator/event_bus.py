"""Event bus for session orchestration events.

Events are emitted by the session manager, supervisors and integrators, kept
in memory for the CLI and appended to the session's ``events.jsonl``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from scribeswarm.protocol.io import append_jsonl, read_jsonl

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionEvent:
    """A single orchestration event."""

    event_type: str         # "session.transition" | "worker.transition" | "integration.result" | ...
    timestamp: float = field(default_factory=time.time)
    task_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""


class EventBus:
    """In-process pub/sub for session events.

    Subscribers receive every emitted event.  A failing subscriber or an
    unwritable log never interrupts the emitter.
    """

    def __init__(self, persist_path: Path | None = None) -> None:
        self._subscribers: list[Callable[[SessionEvent], Any]] = []
        self._persist_path = persist_path
        self._history: list[SessionEvent] = []

    def emit(self, event: SessionEvent) -> None:
        self._history.append(event)

        for cb in self._subscribers:
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

        if self._persist_path:
            try:
                append_jsonl(self._persist_path, asdict(event))
            except OSError as exc:
                logger.debug("EventBus persist error: %s", exc)

    def publish(self, event_type: str, message: str = "", *, task_id: str = "", **data: Any) -> None:
        self.emit(SessionEvent(event_type=event_type, task_id=task_id, data=data, message=message))

    def subscribe(self, callback: Callable[[SessionEvent], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[SessionEvent], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[SessionEvent]:
        return list(self._history)

    def of_type(self, event_type: str) -> list[SessionEvent]:
        return [e for e in self._history if e.event_type == event_type]


def load_events(path: Path, limit: int | None = None) -> list[SessionEvent]:
    """Read persisted events back, newest last."""
    allowed = set(SessionEvent.__dataclass_fields__.keys())
    return [SessionEvent(**{k: v for k, v in row.items() if k in allowed}) for row in read_jsonl(path, limit)]
