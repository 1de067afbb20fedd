"""End-to-end recording flows across coordinator, host and store."""

from __future__ import annotations

import asyncio
import zipfile
from pathlib import Path

from conftest import FakeEncoder, FakeStreamProvider, wait_for

from session_capture.bus import MessageBus
from session_capture.capture import AutoApproveSelector
from session_capture.coordinator import SessionCoordinator
from session_capture.event_log import EventLog
from session_capture.export import ArchiveExporter, read_manifest
from session_capture.host import RecorderHost
from session_capture.models import (
    ActionEvent,
    CaptureSourceType,
    ScreenshotPhase,
    SelectedSource,
    SessionStatus,
)
from session_capture.store import open_store


def test_tab_recording_with_duplicate_action_exports_archive(
    fast_settings, tmp_path: Path
) -> None:
    bus = MessageBus()
    store = open_store(tmp_path / "capture.db")
    event_log = EventLog(tmp_path / "events.jsonl")
    host = RecorderHost(
        bus,
        store,
        FakeStreamProvider(),
        settings=fast_settings,
        exporter=ArchiveExporter(store, tmp_path / "exports"),
        event_log=event_log,
        encoder_factory=lambda _s: FakeEncoder(),
    )
    coordinator = SessionCoordinator(bus, AutoApproveSelector(), event_log=event_log)
    action = ActionEvent(action_id="a1", type="click", happened_at=0.0)

    async def scenario():
        await coordinator.connect()
        await host.start()
        started = await coordinator.start(SelectedSource(type=CaptureSourceType.TAB))
        await wait_for(lambda: host.preview.has_frame)
        await coordinator.ingest_action(action)
        await coordinator.ingest_action(action)
        await host.pending_writes.drain()
        ended = await coordinator.stop("user")
        shots = await store.screenshots_for(started.session_id)
        return started, ended, shots

    started, ended, shots = asyncio.run(scenario())
    store.close()

    assert started.status is SessionStatus.RECORDING
    assert started.session_id is not None
    assert ended.status is SessionStatus.ENDED
    assert ended.session_id == started.session_id
    assert ended.reason == "user"

    a1_shots = [shot for shot in shots if shot.action_id == "a1"]
    assert sorted(shot.phase for shot in a1_shots) == [
        ScreenshotPhase.AFTER,
        ScreenshotPhase.BEFORE,
    ]

    export = coordinator.last_export
    assert export is not None
    archive_path = Path(export["path"])
    with zipfile.ZipFile(archive_path) as archive:
        names = archive.namelist()
    assert "manifest.json" in names
    assert any(name.startswith("video/") for name in names)
    assert sum(1 for name in names if name.startswith("screenshots/")) == 2

    manifest = read_manifest(archive_path.read_bytes())
    assert manifest["session_id"] == started.session_id
    assert manifest["counts"]["actions"] == 1
    assert manifest["counts"]["screenshots"] == 2
    assert manifest["counts"]["video_chunks"] == len(manifest["video_chunks"])
    timecodes = [chunk["timecode"] for chunk in manifest["video_chunks"]]
    assert timecodes == sorted(timecodes)

    journal = [entry.event for entry in EventLog(tmp_path / "events.jsonl").tail()]
    assert "recording-started" in journal
    assert "export-complete" in journal


def test_new_session_after_ended_gets_fresh_id(fast_settings) -> None:
    bus = MessageBus()
    store = open_store(None)
    provider = FakeStreamProvider()
    host = RecorderHost(
        bus, store, provider, settings=fast_settings, encoder_factory=lambda _s: FakeEncoder()
    )
    coordinator = SessionCoordinator(bus, AutoApproveSelector())

    async def scenario():
        await coordinator.connect()
        await host.start()
        first = await coordinator.start()
        await coordinator.stop("user")
        second = await coordinator.start()
        await coordinator.stop("user")
        return first, second, await store.list_sessions()

    first, second, sessions = asyncio.run(scenario())
    assert first.session_id != second.session_id
    assert second.status is SessionStatus.RECORDING
    assert {session.session_id for session in sessions} == {first.session_id, second.session_id}
    assert all(session.status is SessionStatus.ENDED for session in sessions)
    assert len(provider.opened) == 2
