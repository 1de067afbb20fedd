from __future__ import annotations

import json
from pathlib import Path

import pytest

from session_capture.event_log import EventLog


def test_events_persist_and_restore(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    log = EventLog(path, max_entries=10)
    log.record("session", "status-recording", "Session idle -> recording", session_id="s1")
    log.record(
        "export",
        "export-complete",
        "Archive written",
        session_id="s1",
        metadata={"actions": 3, "path": None},
    )

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["event"] for line in lines] == ["status-recording", "export-complete"]
    assert lines[1]["metadata"] == {"actions": 3}

    restored = EventLog(path, max_entries=10)
    assert [entry.event for entry in restored.tail()] == ["status-recording", "export-complete"]


def test_tail_filters_and_limits(tmp_path: Path) -> None:
    log = EventLog(None)
    for index in range(5):
        log.record("capture", f"frame-{index}", "Frame", session_id="s1" if index % 2 else "s2")
    log.record("system", "startup", "Starting")

    assert [entry.event for entry in log.tail(2)] == ["frame-4", "startup"]
    assert [entry.event for entry in log.tail(category="system")] == ["startup"]
    assert [entry.event for entry in log.tail(session_id="s1")] == ["frame-1", "frame-3"]


def test_memory_is_bounded_and_blank_category_defaults(tmp_path: Path) -> None:
    log = EventLog(tmp_path / "events.jsonl", max_entries=3)
    for index in range(5):
        log.record("  ", f"event-{index}", "message")
    entries = log.tail()
    assert [entry.event for entry in entries] == ["event-2", "event-3", "event-4"]
    assert {entry.category for entry in entries} == {"system"}


def test_corrupt_lines_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "events.jsonl"
    path.write_text(
        "not json\n"
        + json.dumps({"event": "ok", "message": "fine", "timestamp": 1.0})
        + "\n\n"
        + json.dumps(["wrong", "shape"])
        + "\n",
        encoding="utf-8",
    )
    log = EventLog(path)
    entries = log.tail()
    assert len(entries) == 1
    assert entries[0].category == "system"


def test_max_entries_must_be_positive() -> None:
    with pytest.raises(ValueError):
        EventLog(None, max_entries=0)
