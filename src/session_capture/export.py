"""Session archive export."""
from __future__ import annotations

import asyncio
import io
import json
import logging
import zipfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ExportFailure, PersistenceFailure, SessionNotFound
from .models import ActionEvent, ScreenshotArtifact, SessionState, VideoChunk
from .store import PersistentStore

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
SCREENSHOT_DIR = "screenshots"
VIDEO_DIR = "video"

_EXTENSIONS: tuple[tuple[str, str], ...] = (
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
    ("png", "png"),
    ("webm", "webm"),
    ("mp4", "mp4"),
)


def extension_for(mime_type: str | None) -> str:
    """Infer a file extension from an encoding type, defaulting to ``bin``."""

    lowered = (mime_type or "").lower()
    for token, extension in _EXTENSIONS:
        if token in lowered:
            return extension
    return "bin"


@dataclass(slots=True)
class SessionBundle:
    session: SessionState
    actions: list[ActionEvent] = field(default_factory=list)
    screenshots: list[ScreenshotArtifact] = field(default_factory=list)
    video_chunks: list[VideoChunk] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExportResult:
    session_id: str
    path: Path
    filename: str
    counts: dict[str, int]
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "path": str(self.path),
            "filename": self.filename,
            "counts": dict(self.counts),
            "size_bytes": self.size_bytes,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_archive_bytes(
    bundle: SessionBundle, *, exported_at: datetime | None = None
) -> tuple[bytes, dict[str, int]]:
    """Return the zipped archive for *bundle* and its per-kind file counts."""

    moment = exported_at or _utcnow()
    session_id = bundle.session.session_id
    screenshots: list[dict[str, Any]] = []
    chunks: list[dict[str, Any]] = []
    skipped: dict[str, list[str]] = {"screenshots": [], "video_chunks": []}
    buffer = io.BytesIO()
    with zipfile.ZipFile(
        buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6
    ) as archive:
        for shot in bundle.screenshots:
            if not shot.data:
                logger.warning("Skipping screenshot %s without payload", shot.screenshot_id)
                skipped["screenshots"].append(shot.screenshot_id)
                continue
            blob_path = f"{SCREENSHOT_DIR}/{shot.screenshot_id}.{extension_for(shot.mime_type)}"
            archive.writestr(blob_path, shot.data)
            screenshots.append(replace(shot, data=None, blob_path=blob_path).to_dict())
        for chunk in bundle.video_chunks:
            if not chunk.data:
                logger.warning("Skipping video chunk %s without payload", chunk.chunk_id)
                skipped["video_chunks"].append(chunk.chunk_id)
                continue
            blob_path = f"{VIDEO_DIR}/{chunk.chunk_id}.{extension_for(chunk.mime_type)}"
            archive.writestr(blob_path, chunk.data)
            chunks.append(replace(chunk, data=None, blob_path=blob_path).to_dict())
        counts = {
            "actions": len(bundle.actions),
            "screenshots": len(screenshots),
            "video_chunks": len(chunks),
        }
        manifest: dict[str, Any] = {
            "exported_at": moment.isoformat(),
            "session_id": session_id,
            "counts": counts,
            "session": bundle.session.to_dict(),
            "actions": [action.to_dict() for action in bundle.actions],
            "screenshots": screenshots,
            "video_chunks": chunks,
        }
        if skipped["screenshots"] or skipped["video_chunks"]:
            manifest["skipped"] = skipped
        archive.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))
    return buffer.getvalue(), counts


def read_manifest(archive_bytes: bytes) -> dict[str, Any]:
    """Return the parsed manifest of an exported archive."""

    with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
        return json.loads(archive.read(MANIFEST_NAME).decode("utf-8"))


class ArchiveExporter:
    """Bundles a finished session's records into one compressed archive."""

    def __init__(self, store: PersistentStore, exports_dir: Path | str) -> None:
        self._store = store
        self._exports_dir = Path(exports_dir)

    @property
    def exports_dir(self) -> Path:
        return self._exports_dir

    async def load_bundle(self, session_id: str) -> SessionBundle:
        try:
            session = await self._store.get_session(session_id)
            if session is None:
                raise SessionNotFound(f"Session {session_id} not found")
            actions = await self._store.actions_for(session_id)
            screenshots = await self._store.screenshots_for(session_id)
            chunks = await self._store.video_chunks_for(session_id)
        except PersistenceFailure as exc:
            raise ExportFailure(f"Unable to read session {session_id}: {exc}") from exc
        return SessionBundle(
            session=session,
            actions=actions,
            screenshots=screenshots,
            video_chunks=chunks,
        )

    async def build_archive(self, session_id: str) -> bytes:
        bundle = await self.load_bundle(session_id)
        try:
            data, _counts = await asyncio.to_thread(build_archive_bytes, bundle)
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            raise ExportFailure(f"Unable to build archive for {session_id}: {exc}") from exc
        return data

    async def export(self, session_id: str) -> ExportResult:
        """Write the archive for *session_id* into the exports directory."""

        bundle = await self.load_bundle(session_id)
        moment = _utcnow()
        try:
            data, counts = await asyncio.to_thread(build_archive_bytes, bundle, exported_at=moment)
            path = await asyncio.to_thread(self._write, session_id, moment, data)
        except (OSError, ValueError, zipfile.BadZipFile) as exc:
            raise ExportFailure(f"Unable to export session {session_id}: {exc}") from exc
        logger.info("Exported session %s to %s", session_id, path)
        return ExportResult(
            session_id=session_id,
            path=path,
            filename=path.name,
            counts=counts,
            size_bytes=len(data),
        )

    def _write(self, session_id: str, moment: datetime, data: bytes) -> Path:
        self._exports_dir.mkdir(parents=True, exist_ok=True)
        stamp = moment.strftime("%Y%m%dT%H%M%SZ")
        stem = f"capture-session-{session_id[:8]}-{stamp}"
        path = self._exports_dir / f"{stem}.zip"
        suffix = 1
        while path.exists():
            suffix += 1
            path = self._exports_dir / f"{stem}-{suffix}.zip"
        path.write_bytes(data)
        return path


__all__ = [
    "ArchiveExporter",
    "ExportResult",
    "MANIFEST_NAME",
    "SessionBundle",
    "build_archive_bytes",
    "extension_for",
    "read_manifest",
]
