from __future__ import annotations

from pathlib import Path

from scribeswarm.coordinator.event_bus import EventBus, SessionEvent, load_events


def test_publish_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    bus = EventBus(path)
    bus.publish("session.transition", "started", previous="created", status="analyzing")
    bus.publish("worker.transition", task_id="t1", status="running")

    events = load_events(path)
    assert [e.event_type for e in events] == ["session.transition", "worker.transition"]
    assert events[0].data == {"previous": "created", "status": "analyzing"}
    assert events[1].task_id == "t1"
    assert len(bus.of_type("worker.transition")) == 1


def test_failing_subscriber_does_not_break_emit(tmp_path: Path) -> None:
    bus = EventBus()
    seen: list[SessionEvent] = []

    def boom(_: SessionEvent) -> None:
        raise RuntimeError("subscriber bug")

    record = seen.append
    bus.subscribe(boom)
    bus.subscribe(record)
    bus.publish("integration.result", task_id="t1", outcome="merged")
    assert len(seen) == 1

    bus.unsubscribe(record)
    bus.publish("integration.result", task_id="t2", outcome="merged")
    assert len(seen) == 1
    assert len(bus.history) == 2


def test_unwritable_log_is_ignored(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    bus = EventBus(blocker / "events.jsonl")
    bus.publish("session.transition")
    assert len(bus.history) == 1
