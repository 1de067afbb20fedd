"""Configuration structures for the capture pipeline."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Mapping

DATA_DIR_ENV = "SESSION_CAPTURE_DATA_DIR"
DEFAULT_DATA_DIR = Path("data")

COLLECTIONS: tuple[str, ...] = (
    "sessions",
    "actions",
    "screenshots",
    "videoChunks",
    "uploadJobs",
)


def resolve_data_dir(value: Path | str | None = None) -> Path:
    """Return the data directory, honouring ``SESSION_CAPTURE_DATA_DIR``."""

    if value is not None:
        return Path(value)
    env_value = os.environ.get(DATA_DIR_ENV, "").strip()
    return Path(env_value) if env_value else DEFAULT_DATA_DIR


@dataclass(frozen=True, slots=True)
class EncodingProfile:
    """Candidate encoding for chunked video capture."""

    mime_type: str
    codec: str
    container: str
    extension: str

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EncodingProfile":
        return cls(
            mime_type=str(payload["mime_type"]),
            codec=str(payload["codec"]),
            container=str(payload["container"]),
            extension=str(payload.get("extension") or payload["container"]),
        )


DEFAULT_ENCODING_CANDIDATES: tuple[EncodingProfile, ...] = (
    EncodingProfile("video/webm;codecs=vp9", "libvpx-vp9", "webm", "webm"),
    EncodingProfile("video/webm;codecs=vp8", "libvpx", "webm", "webm"),
    EncodingProfile("video/mp4;codecs=avc1", "libx264", "mp4", "mp4"),
    EncodingProfile("video/mp4", "mpeg4", "mp4", "mp4"),
)


@dataclass(frozen=True, slots=True)
class StoreLimits:
    """Maximum record count per collection; ``None`` disables eviction."""

    sessions: int | None = 50
    actions: int | None = 500
    screenshots: int | None = 200
    video_chunks: int | None = 200
    upload_jobs: int | None = 200

    def __post_init__(self) -> None:
        for name in ("sessions", "actions", "screenshots", "video_chunks", "upload_jobs"):
            value = getattr(self, name)
            if value is not None and int(value) < 1:
                raise ValueError(f"Store limit for {name} must be positive")

    def for_collection(self, collection: str) -> int | None:
        mapping = {
            "sessions": self.sessions,
            "actions": self.actions,
            "screenshots": self.screenshots,
            "videoChunks": self.video_chunks,
            "uploadJobs": self.upload_jobs,
        }
        if collection not in mapping:
            raise KeyError(collection)
        return mapping[collection]

    def to_dict(self) -> dict[str, int | None]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class RecorderSettings:
    """Tunables for capture, sampling and finalisation."""

    timeslice_ms: int = 5000
    video_bitrate: int = 2_000_000
    video_width: int = 1920
    video_height: int = 1080
    frame_rate: int = 30
    encoding_candidates: tuple[EncodingProfile, ...] = DEFAULT_ENCODING_CANDIDATES
    after_settle_ms: int = 150
    jpeg_quality: int = 85
    # None waits for the encoder flush indefinitely.
    finalize_flush_timeout_s: float | None = None
    session_write_attempts: int = 3
    session_write_retry_delay_s: float = 0.05
    store_limits: StoreLimits = field(default_factory=StoreLimits)

    def __post_init__(self) -> None:
        if self.timeslice_ms < 100:
            raise ValueError("Time slice must be at least 100 ms")
        if self.video_bitrate <= 0:
            raise ValueError("Video bitrate must be positive")
        if self.video_width <= 0 or self.video_height <= 0:
            raise ValueError("Video dimensions must be positive")
        if self.frame_rate < 1 or self.frame_rate > 60:
            raise ValueError("Frame rate must be between 1 and 60 fps")
        if not self.encoding_candidates:
            raise ValueError("At least one encoding candidate is required")
        if self.after_settle_ms < 0:
            raise ValueError("After-action settle delay must not be negative")
        if self.jpeg_quality < 1 or self.jpeg_quality > 100:
            raise ValueError("JPEG quality must be between 1 and 100")
        if self.finalize_flush_timeout_s is not None and self.finalize_flush_timeout_s <= 0:
            raise ValueError("Flush timeout must be positive when set")
        if self.session_write_attempts < 1:
            raise ValueError("Session writes need at least one attempt")
        if self.session_write_retry_delay_s < 0:
            raise ValueError("Retry delay must not be negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeslice_ms": self.timeslice_ms,
            "video_bitrate": self.video_bitrate,
            "video_width": self.video_width,
            "video_height": self.video_height,
            "frame_rate": self.frame_rate,
            "encoding_candidates": [item.to_dict() for item in self.encoding_candidates],
            "after_settle_ms": self.after_settle_ms,
            "jpeg_quality": self.jpeg_quality,
            "finalize_flush_timeout_s": self.finalize_flush_timeout_s,
            "session_write_attempts": self.session_write_attempts,
            "session_write_retry_delay_s": self.session_write_retry_delay_s,
            "store_limits": self.store_limits.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecorderSettings":
        data: dict[str, Any] = dict(payload)
        candidates = data.get("encoding_candidates")
        if candidates is not None:
            data["encoding_candidates"] = tuple(
                item if isinstance(item, EncodingProfile) else EncodingProfile.from_dict(item)
                for item in candidates
            )
        limits = data.get("store_limits")
        if isinstance(limits, Mapping):
            data["store_limits"] = StoreLimits(**dict(limits))
        return cls(**data)


class SettingsStore:
    """JSON backed persistence for :class:`RecorderSettings`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RecorderSettings:
        with self._lock:
            if not self._path.exists():
                return RecorderSettings()
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ValueError("Invalid recorder settings JSON") from exc
        if not isinstance(raw, dict):
            raise ValueError("Recorder settings file must contain a JSON object")
        return RecorderSettings.from_dict(raw)

    def save(self, settings: RecorderSettings) -> None:
        payload = settings.to_dict()
        with self._lock:
            self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "COLLECTIONS",
    "DATA_DIR_ENV",
    "DEFAULT_ENCODING_CANDIDATES",
    "EncodingProfile",
    "RecorderSettings",
    "SettingsStore",
    "StoreLimits",
    "resolve_data_dir",
]
