"""Records exchanged between capture contexts and kept in the durable store."""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from .errors import IllegalTransition


class SessionStatus(str, Enum):
    """Lifecycle states of a recording session."""

    IDLE = "idle"
    CONSENTING = "consenting"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPING = "stopping"
    ENDED = "ended"


class CaptureSourceType(str, Enum):
    TAB = "tab"
    SCREEN = "screen"
    WINDOW = "window"


class ScreenshotPhase(str, Enum):
    BEFORE = "before"
    AFTER = "after"
    DURING = "during"


class UploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    FAILED = "failed"
    DONE = "done"


ACTION_TYPES: tuple[str, ...] = (
    "click",
    "scroll",
    "drag",
    "keypress",
    "mouseover_start",
    "mouseover_end",
)


SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.CONSENTING, SessionStatus.RECORDING}),
    SessionStatus.CONSENTING: frozenset(
        {SessionStatus.RECORDING, SessionStatus.IDLE, SessionStatus.ENDED}
    ),
    # recording -> ended only happens when acquisition aborts before capture began
    SessionStatus.RECORDING: frozenset(
        {SessionStatus.PAUSED, SessionStatus.STOPPING, SessionStatus.ENDED}
    ),
    SessionStatus.PAUSED: frozenset({SessionStatus.RECORDING, SessionStatus.STOPPING}),
    SessionStatus.STOPPING: frozenset({SessionStatus.ENDED}),
    SessionStatus.ENDED: frozenset({SessionStatus.CONSENTING, SessionStatus.RECORDING}),
}


def new_id() -> str:
    return str(uuid.uuid4())


def wall_time() -> float:
    return time.time()


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_mapping(value: Any) -> dict[str, Any] | None:
    if isinstance(value, Mapping):
        return dict(value)
    return None


@dataclass(frozen=True, slots=True)
class SelectedSource:
    """Capture source chosen for a session; immutable once attached."""

    type: CaptureSourceType = CaptureSourceType.TAB
    stream_id: str | None = None
    chosen_at: float | None = None
    tab_id: int | None = None
    audio: bool = False

    def with_stream(self, stream_id: str, *, chosen_at: float | None = None) -> "SelectedSource":
        return replace(
            self,
            stream_id=stream_id,
            chosen_at=chosen_at if chosen_at is not None else wall_time(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "stream_id": self.stream_id,
            "chosen_at": self.chosen_at,
            "tab_id": self.tab_id,
            "audio": bool(self.audio),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SelectedSource":
        raw_type = payload.get("type", CaptureSourceType.TAB)
        tab_id = payload.get("tab_id")
        return cls(
            type=CaptureSourceType(raw_type),
            stream_id=_optional_str(payload.get("stream_id")),
            chosen_at=_optional_float(payload.get("chosen_at")),
            tab_id=int(tab_id) if tab_id is not None else None,
            audio=bool(payload.get("audio", False)),
        )


@dataclass(frozen=True, slots=True)
class SessionState:
    """Snapshot of one recording session."""

    status: SessionStatus = SessionStatus.IDLE
    session_id: str | None = None
    source: SelectedSource | None = None
    started_at: float | None = None
    ended_at: float | None = None
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is SessionStatus.ENDED

    @property
    def is_active(self) -> bool:
        return self.status in (SessionStatus.RECORDING, SessionStatus.PAUSED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "source": self.source.to_dict() if self.source is not None else None,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SessionState":
        source_payload = payload.get("source")
        return cls(
            status=SessionStatus(payload.get("status", SessionStatus.IDLE)),
            session_id=_optional_str(payload.get("session_id")),
            source=(
                SelectedSource.from_dict(source_payload)
                if isinstance(source_payload, Mapping)
                else None
            ),
            started_at=_optional_float(payload.get("started_at")),
            ended_at=_optional_float(payload.get("ended_at")),
            reason=_optional_str(payload.get("reason")),
        )


IDLE_SESSION = SessionState()


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS.get(current, frozenset())


def advance(state: SessionState, status: SessionStatus, **changes: Any) -> SessionState:
    """Return a copy of *state* moved to *status*, enforcing the lifecycle."""

    if not can_transition(state.status, status):
        raise IllegalTransition(
            f"Cannot move session from {state.status.value} to {status.value}"
        )
    return replace(state, status=status, **changes)


@dataclass(frozen=True, slots=True)
class ActionEvent:
    """User interaction reported by the interaction observer."""

    action_id: str
    type: str
    happened_at: float
    perf_time: float = 0.0
    session_id: str | None = None
    dom_meta: dict[str, Any] = field(default_factory=dict)
    stream_timestamp: float | None = None
    key_meta: dict[str, Any] | None = None
    pointer_meta: dict[str, Any] | None = None

    def with_session(self, session_id: str) -> "ActionEvent":
        return replace(self, session_id=session_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ActionEvent":
        action_id = _optional_str(payload.get("action_id"))
        if action_id is None:
            raise ValueError("Action events require an action_id")
        happened_at = _optional_float(payload.get("happened_at"))
        return cls(
            action_id=action_id,
            type=str(payload.get("type") or "unknown"),
            happened_at=happened_at if happened_at is not None else wall_time(),
            perf_time=_optional_float(payload.get("perf_time")) or 0.0,
            session_id=_optional_str(payload.get("session_id")),
            dom_meta=_optional_mapping(payload.get("dom_meta")) or {},
            stream_timestamp=_optional_float(payload.get("stream_timestamp")),
            key_meta=_optional_mapping(payload.get("key_meta")),
            pointer_meta=_optional_mapping(payload.get("pointer_meta")),
        )


@dataclass(frozen=True, slots=True)
class ScreenshotArtifact:
    """Still frame extracted around an action."""

    screenshot_id: str
    session_id: str
    action_id: str
    phase: ScreenshotPhase
    wall_clock_captured_at: float
    capture_latency_ms: float | None = None
    stream_timestamp: float | None = None
    mime_type: str = "image/jpeg"
    data: bytes | None = field(default=None, repr=False)
    blob_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the metadata; the binary payload is never included."""

        return {
            "screenshot_id": self.screenshot_id,
            "session_id": self.session_id,
            "action_id": self.action_id,
            "phase": self.phase.value,
            "wall_clock_captured_at": self.wall_clock_captured_at,
            "capture_latency_ms": self.capture_latency_ms,
            "stream_timestamp": self.stream_timestamp,
            "mime_type": self.mime_type,
            "blob_path": self.blob_path,
        }

    @classmethod
    def from_dict(
        cls, payload: Mapping[str, Any], *, data: bytes | None = None
    ) -> "ScreenshotArtifact":
        return cls(
            screenshot_id=str(payload["screenshot_id"]),
            session_id=str(payload["session_id"]),
            action_id=str(payload["action_id"]),
            phase=ScreenshotPhase(payload.get("phase", ScreenshotPhase.DURING)),
            wall_clock_captured_at=float(payload["wall_clock_captured_at"]),
            capture_latency_ms=_optional_float(payload.get("capture_latency_ms")),
            stream_timestamp=_optional_float(payload.get("stream_timestamp")),
            mime_type=str(payload.get("mime_type") or "application/octet-stream"),
            data=data,
            blob_path=_optional_str(payload.get("blob_path")),
        )


@dataclass(frozen=True, slots=True)
class VideoChunk:
    """One encoder time slice persisted as it was emitted."""

    chunk_id: str
    session_id: str
    timecode: float
    wall_clock_captured_at: float
    mime_type: str
    bitrate: int | None = None
    data: bytes | None = field(default=None, repr=False)
    blob_path: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.data else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "session_id": self.session_id,
            "timecode": self.timecode,
            "wall_clock_captured_at": self.wall_clock_captured_at,
            "mime_type": self.mime_type,
            "bitrate": self.bitrate,
            "blob_path": self.blob_path,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, data: bytes | None = None) -> "VideoChunk":
        bitrate = payload.get("bitrate")
        return cls(
            chunk_id=str(payload["chunk_id"]),
            session_id=str(payload["session_id"]),
            timecode=float(payload["timecode"]),
            wall_clock_captured_at=float(payload["wall_clock_captured_at"]),
            mime_type=str(payload.get("mime_type") or "application/octet-stream"),
            bitrate=int(bitrate) if bitrate is not None else None,
            data=data,
            blob_path=_optional_str(payload.get("blob_path")),
        )


@dataclass(frozen=True, slots=True)
class UploadJob:
    """Upload work item handed to an external uploader."""

    job_id: str
    item_refs: tuple[str, ...]
    status: UploadStatus = UploadStatus.PENDING
    retries: int = 0
    last_error: str | None = None
    created_at: float = field(default_factory=wall_time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "item_refs": list(self.item_refs),
            "status": self.status.value,
            "retries": int(self.retries),
            "last_error": self.last_error,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UploadJob":
        return cls(
            job_id=str(payload["job_id"]),
            item_refs=tuple(str(item) for item in payload.get("item_refs", ())),
            status=UploadStatus(payload.get("status", UploadStatus.PENDING)),
            retries=int(payload.get("retries", 0)),
            last_error=_optional_str(payload.get("last_error")),
            created_at=float(payload.get("created_at", wall_time())),
        )


__all__ = [
    "ACTION_TYPES",
    "ActionEvent",
    "CaptureSourceType",
    "IDLE_SESSION",
    "SESSION_TRANSITIONS",
    "ScreenshotArtifact",
    "ScreenshotPhase",
    "SelectedSource",
    "SessionState",
    "SessionStatus",
    "UploadJob",
    "UploadStatus",
    "VideoChunk",
    "advance",
    "can_transition",
    "new_id",
    "wall_time",
]
