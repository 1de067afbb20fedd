"""Persistent lifecycle journal for capture sessions."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable, Mapping

logger = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = ("session", "capture", "export", "system")


@dataclass(slots=True)
class EventLogEntry:
    """A lifecycle event kept for troubleshooting a recording."""

    timestamp: float
    category: str
    event: str
    message: str
    session_id: str | None = None
    status: dict[str, object | None] | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.session_id is not None:
            payload["session_id"] = self.session_id
        if self.status is not None:
            payload["status"] = self.status
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> "EventLogEntry | None":
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        try:
            timestamp = float(payload.get("timestamp", time.time()))
        except (TypeError, ValueError):
            timestamp = time.time()
        session_id = payload.get("session_id")
        status = payload.get("status")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category.strip() if isinstance(category, str) and category.strip() else "system",
            event=event,
            message=message,
            session_id=session_id if isinstance(session_id, str) else None,
            status=status if isinstance(status, dict) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class EventLog:
    """Append-only JSONL journal with a bounded in-memory tail."""

    def __init__(
        self,
        path: Path | str | None = Path("data/events.jsonl"),
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        session_id: str | None = None,
        status: Mapping[str, object | None] | None = None,
        metadata: Mapping[str, object | None] | None = None,
    ) -> EventLogEntry:
        """Append an event and return the stored entry."""

        cleaned = category.strip() if isinstance(category, str) else ""
        entry = EventLogEntry(
            timestamp=time.time(),
            category=cleaned or "system",
            event=event,
            message=message,
            session_id=session_id,
            status=dict(status) if status is not None else None,
            metadata=_drop_empty(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        session_id: str | None = None,
    ) -> list[EventLogEntry]:
        with self._lock:
            entries: Iterable[EventLogEntry] = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if session_id:
            entries = [entry for entry in entries if entry.session_id == session_id]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = EventLogEntry.from_dict(payload)
            if entry is not None:
                self._entries.append(entry)

    def _append(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log entry: %s", exc)


def _drop_empty(
    metadata: Mapping[str, object | None] | None,
) -> dict[str, object | None] | None:
    if not metadata:
        return None
    cleaned = {key: value for key, value in metadata.items() if value is not None}
    return cleaned or None


__all__ = ["CATEGORIES", "EventLog", "EventLogEntry"]
