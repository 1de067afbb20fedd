from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest

pytest.importorskip("httpx")

from conftest import FakeEncoder, FakeStreamProvider
from fastapi import FastAPI
from fastapi.testclient import TestClient

from session_capture import create_app
from session_capture.config import RecorderSettings


def build_app(tmp_path: Path, settings: RecorderSettings) -> tuple[FastAPI, FakeStreamProvider]:
    provider = FakeStreamProvider()
    app = create_app(
        tmp_path,
        stream_provider=provider,
        encoder_factory=lambda _settings: FakeEncoder(),
        settings=settings,
    )
    return app, provider


def test_recording_lifecycle_over_http(tmp_path: Path, fast_settings) -> None:
    app, provider = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        response = client.get("/api/session")
        assert response.status_code == 200
        payload = response.json()
        assert payload["session"]["status"] == "idle"
        assert payload["host_ready"] is True

        response = client.post("/api/session/start", json={"type": "tab"})
        assert response.status_code == 200
        session = response.json()["session"]
        assert session["status"] == "recording"
        session_id = session["session_id"]
        assert session["source"]["stream_id"].startswith("synthetic-tab-")

        response = client.post("/api/actions", json={"action_id": "a1", "type": "click"})
        assert response.json() == {"accepted": True}

        response = client.post("/api/session/stop", json={"reason": "user"})
        assert response.status_code == 200
        body = response.json()
        assert body["session"]["status"] == "ended"
        assert body["session"]["reason"] == "user"
        assert body["export"]["filename"].startswith("capture-session-")

        response = client.post("/api/actions", json={"action_id": "a2"})
        assert response.json() == {"accepted": False}

        response = client.get("/api/sessions")
        assert [item["session_id"] for item in response.json()["sessions"]] == [session_id]

        response = client.get(f"/api/sessions/{session_id}/export")
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
            names = archive.namelist()
        assert "manifest.json" in names
        assert any(name.startswith("video/") for name in names)

        updates = client.get("/api/session/updates").json()["updates"]
        assert [item["status"] for item in updates][-1] == "ended"

        events = client.get("/api/events", params={"category": "session"}).json()["entries"]
        assert events
        assert all(entry["category"] == "session" for entry in events)

    assert len(provider.opened) == 1
    assert provider.opened[0].active is False
    assert (tmp_path / "capture.db").exists()
    assert list((tmp_path / "exports").glob("capture-session-*.zip"))


def test_pause_and_resume_routes(tmp_path: Path, fast_settings) -> None:
    app, _ = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        client.post("/api/session/start", json={"type": "screen"})
        assert client.post("/api/session/pause").json()["session"]["status"] == "paused"
        assert client.post("/api/session/resume").json()["session"]["status"] == "recording"
        assert client.post("/api/session/stop").json()["session"]["status"] == "ended"


def test_message_endpoint_drops_foreign_messages(tmp_path: Path, fast_settings) -> None:
    app, _ = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        response = client.post("/api/messages", json={"type": "other/ping"})
        assert response.json() == {"accepted": False}

        response = client.post("/api/messages", json={"type": "capture/status-request"})
        assert response.status_code == 200
        assert response.json()["type"] == "capture/status"
        assert response.json()["payload"]["status"] == "idle"

        response = client.post("/api/messages", json={"type": "capture/stop"})
        assert response.json()["type"] == "capture/ack"
        assert response.json()["payload"]["session"]["status"] == "idle"


def test_unknown_session_export_is_not_found(tmp_path: Path, fast_settings) -> None:
    app, _ = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        response = client.get("/api/sessions/missing/export")
        assert response.status_code == 404
        response = client.post("/api/sessions/missing/upload-jobs")
        assert response.status_code == 404


def test_upload_jobs_and_settings_routes(tmp_path: Path, fast_settings) -> None:
    app, _ = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        session_id = client.post("/api/session/start", json={}).json()["session"]["session_id"]
        client.post("/api/session/stop")

        response = client.post(f"/api/sessions/{session_id}/upload-jobs")
        assert response.status_code == 200
        job = response.json()
        assert job["item_refs"] == [session_id]
        assert job["status"] == "pending"

        jobs = client.get("/api/upload-jobs").json()["jobs"]
        assert [item["job_id"] for item in jobs] == [job["job_id"]]

        settings = client.get("/api/settings").json()
        assert settings["timeslice_ms"] == fast_settings.timeslice_ms
        assert settings["store_limits"]["actions"] == 500


def test_settings_file_is_used_when_none_given(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text('{"timeslice_ms": 2500}', encoding="utf-8")
    app = create_app(
        tmp_path,
        stream_provider=FakeStreamProvider(),
        encoder_factory=lambda _settings: FakeEncoder(),
    )
    assert app.state.settings.timeslice_ms == 2500


def test_delete_session_route(tmp_path: Path, fast_settings) -> None:
    app, _ = build_app(tmp_path, fast_settings)
    with TestClient(app) as client:
        session_id = client.post("/api/session/start", json={}).json()["session"]["session_id"]
        client.post("/api/actions", json={"action_id": "a1"})

        response = client.delete(f"/api/sessions/{session_id}")
        assert response.status_code == 409

        client.post("/api/session/stop")
        response = client.delete(f"/api/sessions/{session_id}")
        assert response.status_code == 200
        body = response.json()
        assert body["deleted"] == session_id
        assert body["records"] >= 2

        assert client.get("/api/sessions").json()["sessions"] == []
        assert client.get(f"/api/sessions/{session_id}/export").status_code == 404
        assert client.delete(f"/api/sessions/{session_id}").status_code == 404
