"""Tagged message variants exchanged between capture contexts."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from .models import SessionState

PREFIX = "capture/"

HOST_CONTEXT = "host"
COORDINATOR_CONTEXT = "coordinator"


class MessageKind(str, Enum):
    START = "capture/start"
    STOP = "capture/stop"
    PAUSE = "capture/pause"
    STATUS_REQUEST = "capture/status-request"
    STATUS = "capture/status"
    ACTION = "capture/action"
    HOST_READY = "capture/host-ready"
    STREAM_REQUEST = "capture/stream-request"
    STREAM_RESPONSE = "capture/stream-response"
    RECORDER_START = "capture/recorder-start"
    RECORDER_STOP = "capture/recorder-stop"
    RECORDER_PAUSE = "capture/recorder-pause"
    RECORDER_RESUME = "capture/recorder-resume"
    STREAM_DEAD = "capture/stream-dead"
    ACK = "capture/ack"


_KINDS: dict[str, MessageKind] = {kind.value: kind for kind in MessageKind}


@dataclass(frozen=True, slots=True)
class Message:
    """A namespaced kind plus an optional payload."""

    kind: MessageKind
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def request_id(self) -> str | None:
        value = self.payload.get("request_id")
        return value if isinstance(value, str) and value else None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.kind.value}
        if self.payload:
            data["payload"] = dict(self.payload)
        return data


def recognise(raw: object) -> Message | None:
    """Return a :class:`Message` for *raw*, or ``None`` when it is not one of ours.

    Anything without a string ``type`` carrying the namespace prefix, naming an
    unknown kind, or with a non-mapping payload is dropped rather than raised.
    """

    if isinstance(raw, Message):
        return raw
    if not isinstance(raw, Mapping):
        return None
    kind_value = raw.get("type")
    if not isinstance(kind_value, str) or not kind_value.startswith(PREFIX):
        return None
    kind = _KINDS.get(kind_value)
    if kind is None:
        return None
    payload = raw.get("payload")
    if payload is None:
        return Message(kind)
    if not isinstance(payload, Mapping):
        return None
    return Message(kind, dict(payload))


def ack(
    ok: bool = True,
    *,
    message: str | None = None,
    session: SessionState | None = None,
    **extra: Any,
) -> Message:
    payload: dict[str, Any] = {"ok": bool(ok)}
    if message:
        payload["message"] = message
    if session is not None:
        payload["session"] = session.to_dict()
    payload.update({key: value for key, value in extra.items() if value is not None})
    return Message(MessageKind.ACK, payload)


def status_message(session: SessionState) -> Message:
    return Message(MessageKind.STATUS, session.to_dict())


def session_from(message: Message | None) -> SessionState | None:
    """Extract the session snapshot carried by a status or ack message."""

    if message is None:
        return None
    if message.kind is MessageKind.STATUS:
        return SessionState.from_dict(message.payload)
    if message.kind is MessageKind.ACK:
        session = message.payload.get("session")
        if isinstance(session, Mapping):
            return SessionState.from_dict(session)
    return None


__all__ = [
    "COORDINATOR_CONTEXT",
    "HOST_CONTEXT",
    "Message",
    "MessageKind",
    "PREFIX",
    "ack",
    "recognise",
    "session_from",
    "status_message",
]
