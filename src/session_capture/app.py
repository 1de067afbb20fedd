"""FastAPI application wiring together the capture services."""
from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any, Deque

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from .bus import ROLE_SURFACE, MessageBus
from .capture import AutoApproveSelector, SourceSelector, StreamProvider, SyntheticStreamProvider
from .config import RecorderSettings, SettingsStore, resolve_data_dir
from .coordinator import SessionCoordinator
from .errors import (
    ExportFailure,
    MessageDeliveryFailure,
    PersistenceFailure,
    SessionNotFound,
)
from .event_log import EventLog
from .export import ArchiveExporter
from .host import EncoderFactory, RecorderHost
from .models import ActionEvent, CaptureSourceType, SelectedSource, SessionStatus, wall_time
from .protocol import COORDINATOR_CONTEXT, Message, recognise, session_from
from .store import open_store
from .upload import enqueue_upload
from .version import APP_VERSION

STATUS_SURFACE = "http"


class SourcePayload(BaseModel):
    type: CaptureSourceType = CaptureSourceType.TAB
    stream_id: str | None = Field(default=None, max_length=256)
    tab_id: int | None = None
    audio: bool = False


class StopPayload(BaseModel):
    reason: str | None = Field(default="user", max_length=128)


class ActionPayloadModel(BaseModel):
    action_id: str = Field(min_length=1, max_length=128)
    type: str = Field(default="click", max_length=64)
    happened_at: float | None = None
    perf_time: float = 0.0
    dom_meta: dict[str, Any] = Field(default_factory=dict)
    stream_timestamp: float | None = None
    key_meta: dict[str, Any] | None = None
    pointer_meta: dict[str, Any] | None = None


def create_app(
    data_dir: Path | str | None = None,
    *,
    stream_provider: StreamProvider | None = None,
    selector: SourceSelector | None = None,
    encoder_factory: EncoderFactory | None = None,
    settings: RecorderSettings | None = None,
) -> FastAPI:
    app = FastAPI(title="Session Capture", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    data_path = resolve_data_dir(data_dir)
    data_path.mkdir(parents=True, exist_ok=True)
    settings_store = SettingsStore(data_path / "settings.json")
    active_settings = settings if settings is not None else settings_store.load()

    store = open_store(data_path / "capture.db", limits=active_settings.store_limits)
    exporter = ArchiveExporter(store, data_path / "exports")
    event_log = EventLog(data_path / "events.jsonl")
    bus = MessageBus()
    provider = stream_provider or SyntheticStreamProvider(
        resolution=(active_settings.video_width, active_settings.video_height)
    )
    host = RecorderHost(
        bus,
        store,
        provider,
        settings=active_settings,
        exporter=exporter,
        event_log=event_log,
        encoder_factory=encoder_factory,
    )
    coordinator = SessionCoordinator(
        bus,
        selector or AutoApproveSelector(),
        event_log=event_log,
    )
    status_feed: Deque[dict[str, Any]] = deque(maxlen=50)

    async def _on_status(message: Message) -> None:
        state = session_from(message)
        if state is not None:
            status_feed.append(state.to_dict())

    def _session_payload() -> dict[str, object | None]:
        state = coordinator.status()
        return {
            "session": state.to_dict(),
            "host_ready": coordinator.channel.ready,
            "error": coordinator.last_error,
            "export": coordinator.last_export,
        }

    app.state.bus = bus
    app.state.store = store
    app.state.host = host
    app.state.coordinator = coordinator
    app.state.exporter = exporter
    app.state.event_log = event_log
    app.state.settings = active_settings

    @app.on_event("startup")
    async def startup() -> None:
        event_log.record("system", "startup", "Session capture starting up.")
        bus.register(STATUS_SURFACE, _on_status, role=ROLE_SURFACE)
        await coordinator.connect()
        await host.start()
        removed = await store.enforce_limits()
        if any(removed.values()):
            logger.info("Evicted stale records at startup: %s", removed)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if coordinator.status().status in (SessionStatus.RECORDING, SessionStatus.PAUSED):
            await coordinator.stop("shutdown")
        await host.shutdown()
        coordinator.disconnect()
        bus.unregister(STATUS_SURFACE)
        await store.wait_for_eviction()
        store.close()
        event_log.record("system", "shutdown", "Session capture shut down.")

    @app.get("/api/session")
    async def get_session() -> dict[str, object | None]:
        return _session_payload()

    @app.get("/api/session/updates")
    async def get_session_updates() -> dict[str, object]:
        return {"updates": list(status_feed)}

    @app.post("/api/session/start")
    async def start_session(payload: SourcePayload | None = None) -> dict[str, object | None]:
        body = payload or SourcePayload()
        source = SelectedSource(
            type=body.type,
            stream_id=body.stream_id or None,
            tab_id=body.tab_id,
            audio=body.audio,
        )
        await coordinator.start(source)
        return _session_payload()

    @app.post("/api/session/stop")
    async def stop_session(payload: StopPayload | None = None) -> dict[str, object | None]:
        body = payload or StopPayload()
        await coordinator.stop(body.reason)
        return _session_payload()

    @app.post("/api/session/pause")
    async def pause_session() -> dict[str, object | None]:
        await coordinator.pause()
        return _session_payload()

    @app.post("/api/session/resume")
    async def resume_session() -> dict[str, object | None]:
        await coordinator.resume()
        return _session_payload()

    @app.post("/api/actions")
    async def post_action(payload: ActionPayloadModel) -> dict[str, bool]:
        data = payload.model_dump()
        if data.get("happened_at") is None:
            data["happened_at"] = wall_time()
        accepted = await coordinator.ingest_action(ActionEvent.from_dict(data))
        return {"accepted": accepted}

    @app.post("/api/messages")
    async def post_message(request: Request) -> dict[str, object]:
        try:
            raw = await request.json()
        except ValueError:
            return {"accepted": False}
        message = recognise(raw)
        if message is None:
            return {"accepted": False}
        try:
            response = await bus.send(COORDINATOR_CONTEXT, message)
        except MessageDeliveryFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        if response is None:
            return {"accepted": True}
        return response.to_dict()

    @app.get("/api/sessions")
    async def list_sessions() -> dict[str, object]:
        try:
            sessions = await store.list_sessions()
        except PersistenceFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"sessions": [session.to_dict() for session in reversed(sessions)]}

    @app.delete("/api/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, object]:
        live = host.status()
        if live.session_id == session_id and live.status not in (
            SessionStatus.IDLE,
            SessionStatus.ENDED,
        ):
            raise HTTPException(status_code=409, detail="Session is still recording")
        try:
            if await store.get_session(session_id) is None:
                raise HTTPException(status_code=404, detail="Session not found")
            removed = await store.delete_session(session_id)
        except PersistenceFailure as exc:
            logger.exception("Failed to delete session %s", session_id)
            raise HTTPException(status_code=503, detail="Unable to delete session") from exc
        event_log.record(
            "session",
            "session-deleted",
            f"Deleted session {session_id}",
            session_id=session_id,
            metadata={"records": removed},
        )
        return {"deleted": session_id, "records": removed}

    @app.get("/api/sessions/{session_id}/export")
    async def export_session(session_id: str) -> Response:
        try:
            archive = await exporter.build_archive(session_id)
        except SessionNotFound as exc:
            raise HTTPException(status_code=404, detail="Session not found") from exc
        except ExportFailure as exc:
            logger.warning("Export of %s failed: %s", session_id, exc)
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        filename = f"capture-session-{session_id[:8]}.zip"
        return Response(
            content=archive,
            media_type="application/zip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/api/sessions/{session_id}/upload-jobs")
    async def create_upload_job(session_id: str) -> dict[str, object | None]:
        try:
            session = await store.get_session(session_id)
            if session is None:
                raise HTTPException(status_code=404, detail="Session not found")
            job = await enqueue_upload(store, [session_id])
        except PersistenceFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return job.to_dict()

    @app.get("/api/upload-jobs")
    async def list_upload_jobs() -> dict[str, object]:
        jobs = await store.list_upload_jobs()
        return {"jobs": [job.to_dict() for job in jobs]}

    @app.get("/api/events")
    async def get_events(
        limit: int = 100, category: str | None = None, session_id: str | None = None
    ) -> dict[str, object]:
        entries = await run_in_threadpool(
            event_log.tail, limit, category=category, session_id=session_id
        )
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        return active_settings.to_dict()

    return app


__all__ = ["create_app"]
