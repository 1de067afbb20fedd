"""Bounded durable storage for sessions and their artifacts."""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from dataclasses import dataclass
from itertools import count
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Mapping

from .config import COLLECTIONS, StoreLimits
from .errors import PersistenceFailure
from .models import (
    ActionEvent,
    ScreenshotArtifact,
    SessionState,
    UploadJob,
    UploadStatus,
    VideoChunk,
    wall_time,
)

logger = logging.getLogger(__name__)

# uploadJobs are not owned by a session, so they only get a creation-time index.
_SESSION_INDEXED: frozenset[str] = frozenset(
    {"sessions", "actions", "screenshots", "videoChunks"}
)


@dataclass(slots=True)
class StoredRecord:
    """Row as held by a :class:`KeyedStore`."""

    record_id: str
    session_id: str | None
    created_at: float
    body: dict[str, Any]
    payload: bytes | None = None


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise KeyError(f"Unknown collection {collection!r}")


class KeyedStore(ABC):
    """Keyed durable storage capability with per-record upsert atomicity."""

    @abstractmethod
    def upsert(
        self,
        collection: str,
        record_id: str,
        *,
        session_id: str | None,
        created_at: float,
        body: Mapping[str, Any],
        payload: bytes | None = None,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    def get(self, collection: str, record_id: str) -> StoredRecord | None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def by_session(self, collection: str, session_id: str) -> list[StoredRecord]:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def all(self, collection: str) -> list[StoredRecord]:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def count(self, collection: str) -> int:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def evict_oldest(self, collection: str, keep: int) -> int:  # pragma: no cover
        """Delete the oldest records until at most *keep* remain."""

        raise NotImplementedError

    @abstractmethod
    def delete(self, collection: str, record_ids: Iterable[str]) -> int:  # pragma: no cover
        raise NotImplementedError

    def close(self) -> None:  # pragma: no cover - optional override
        return None


class SqliteKeyedStore(KeyedStore):
    """SQLite backend with one table per collection."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._mutex:
            conn = self._connect()
            try:
                for collection in COLLECTIONS:
                    conn.execute(
                        f"""
                        CREATE TABLE IF NOT EXISTS "{collection}" (
                            id TEXT PRIMARY KEY,
                            session_id TEXT,
                            created_at REAL NOT NULL,
                            body TEXT NOT NULL,
                            payload BLOB
                        )
                        """
                    )
                    conn.execute(
                        f'CREATE INDEX IF NOT EXISTS "idx_{collection}_created_at" '
                        f'ON "{collection}"(created_at)'
                    )
                    if collection in _SESSION_INDEXED:
                        conn.execute(
                            f'CREATE INDEX IF NOT EXISTS "idx_{collection}_session_id" '
                            f'ON "{collection}"(session_id)'
                        )
                conn.commit()
            finally:
                conn.close()

    def upsert(
        self,
        collection: str,
        record_id: str,
        *,
        session_id: str | None,
        created_at: float,
        body: Mapping[str, Any],
        payload: bytes | None = None,
    ) -> None:
        _check_collection(collection)
        encoded = json.dumps(dict(body), separators=(",", ":"), ensure_ascii=False)
        with self._mutex:
            conn = self._connect()
            try:
                # The first created_at wins so a retried write keeps its age.
                conn.execute(
                    f"""
                    INSERT INTO "{collection}" (id, session_id, created_at, body, payload)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        session_id = excluded.session_id,
                        body = excluded.body,
                        payload = excluded.payload
                    """,
                    (record_id, session_id, float(created_at), encoded, payload),
                )
                conn.commit()
            finally:
                conn.close()

    def get(self, collection: str, record_id: str) -> StoredRecord | None:
        _check_collection(collection)
        with self._mutex:
            conn = self._connect()
            try:
                row = conn.execute(
                    f'SELECT id, session_id, created_at, body, payload FROM "{collection}" WHERE id = ?',
                    (record_id,),
                ).fetchone()
            finally:
                conn.close()
        return self._row_to_record(row) if row is not None else None

    def by_session(self, collection: str, session_id: str) -> list[StoredRecord]:
        _check_collection(collection)
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(
                    f"""
                    SELECT id, session_id, created_at, body, payload FROM "{collection}"
                    WHERE session_id = ? ORDER BY created_at ASC, rowid ASC
                    """,
                    (session_id,),
                ).fetchall()
            finally:
                conn.close()
        return [self._row_to_record(row) for row in rows]

    def all(self, collection: str) -> list[StoredRecord]:
        _check_collection(collection)
        with self._mutex:
            conn = self._connect()
            try:
                rows = conn.execute(
                    f"""
                    SELECT id, session_id, created_at, body, payload FROM "{collection}"
                    ORDER BY created_at ASC, rowid ASC
                    """
                ).fetchall()
            finally:
                conn.close()
        return [self._row_to_record(row) for row in rows]

    def count(self, collection: str) -> int:
        _check_collection(collection)
        with self._mutex:
            conn = self._connect()
            try:
                return int(conn.execute(f'SELECT COUNT(*) FROM "{collection}"').fetchone()[0])
            finally:
                conn.close()

    def evict_oldest(self, collection: str, keep: int) -> int:
        _check_collection(collection)
        with self._mutex:
            conn = self._connect()
            try:
                total = int(conn.execute(f'SELECT COUNT(*) FROM "{collection}"').fetchone()[0])
                excess = total - max(0, int(keep))
                if excess <= 0:
                    return 0
                conn.execute(
                    f"""
                    DELETE FROM "{collection}" WHERE rowid IN (
                        SELECT rowid FROM "{collection}"
                        ORDER BY created_at ASC, rowid ASC LIMIT ?
                    )
                    """,
                    (excess,),
                )
                conn.commit()
                return excess
            finally:
                conn.close()

    def delete(self, collection: str, record_ids: Iterable[str]) -> int:
        _check_collection(collection)
        ids = [str(item) for item in record_ids]
        if not ids:
            return 0
        removed = 0
        with self._mutex:
            conn = self._connect()
            try:
                for record_id in ids:
                    cursor = conn.execute(f'DELETE FROM "{collection}" WHERE id = ?', (record_id,))
                    removed += cursor.rowcount
                conn.commit()
            finally:
                conn.close()
        return removed

    def _row_to_record(self, row: sqlite3.Row) -> StoredRecord:
        payload = row["payload"]
        return StoredRecord(
            record_id=str(row["id"]),
            session_id=row["session_id"],
            created_at=float(row["created_at"]),
            body=json.loads(row["body"]),
            payload=bytes(payload) if payload is not None else None,
        )


class MemoryKeyedStore(KeyedStore):
    """Process-local backend keeping records in insertion order."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, tuple[int, StoredRecord]]] = {
            name: {} for name in COLLECTIONS
        }
        self._sequence = count()
        self._mutex = RLock()

    def upsert(
        self,
        collection: str,
        record_id: str,
        *,
        session_id: str | None,
        created_at: float,
        body: Mapping[str, Any],
        payload: bytes | None = None,
    ) -> None:
        _check_collection(collection)
        with self._mutex:
            records = self._collections[collection]
            existing = records.get(record_id)
            if existing is not None:
                seq, previous = existing
                created_at = previous.created_at
            else:
                seq = next(self._sequence)
            records[record_id] = (
                seq,
                StoredRecord(
                    record_id=record_id,
                    session_id=session_id,
                    created_at=float(created_at),
                    body=json.loads(json.dumps(dict(body))),
                    payload=bytes(payload) if payload is not None else None,
                ),
            )

    def get(self, collection: str, record_id: str) -> StoredRecord | None:
        _check_collection(collection)
        with self._mutex:
            item = self._collections[collection].get(record_id)
        return item[1] if item is not None else None

    def by_session(self, collection: str, session_id: str) -> list[StoredRecord]:
        return [record for record in self.all(collection) if record.session_id == session_id]

    def all(self, collection: str) -> list[StoredRecord]:
        _check_collection(collection)
        with self._mutex:
            items = sorted(
                self._collections[collection].values(),
                key=lambda item: (item[1].created_at, item[0]),
            )
        return [record for _, record in items]

    def count(self, collection: str) -> int:
        _check_collection(collection)
        with self._mutex:
            return len(self._collections[collection])

    def evict_oldest(self, collection: str, keep: int) -> int:
        with self._mutex:
            ordered = self.all(collection)
            excess = len(ordered) - max(0, int(keep))
            if excess <= 0:
                return 0
            return self.delete(collection, [record.record_id for record in ordered[:excess]])

    def delete(self, collection: str, record_ids: Iterable[str]) -> int:
        _check_collection(collection)
        removed = 0
        with self._mutex:
            records = self._collections[collection]
            for record_id in record_ids:
                if records.pop(str(record_id), None) is not None:
                    removed += 1
        return removed


class PersistentStore:
    """Async facade over a :class:`KeyedStore` with count-bounded eviction."""

    def __init__(self, backend: KeyedStore, *, limits: StoreLimits | None = None) -> None:
        self._backend = backend
        self._limits = limits if limits is not None else StoreLimits()
        self._eviction_pending: set[str] = set()
        self._eviction_tasks: set[asyncio.Task[None]] = set()

    @property
    def backend(self) -> KeyedStore:
        return self._backend

    @property
    def limits(self) -> StoreLimits:
        return self._limits

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def save_session(self, state: SessionState) -> None:
        if state.session_id is None:
            raise PersistenceFailure("Cannot persist a session without an id")
        await self._write(
            "sessions",
            state.session_id,
            session_id=state.session_id,
            created_at=state.started_at if state.started_at is not None else wall_time(),
            body=state.to_dict(),
        )

    async def save_action(self, action: ActionEvent, *, created_at: float | None = None) -> None:
        await self._write(
            "actions",
            action.action_id,
            session_id=action.session_id,
            created_at=created_at,
            body=action.to_dict(),
        )

    async def save_screenshot(
        self, artifact: ScreenshotArtifact, *, created_at: float | None = None
    ) -> None:
        await self._write(
            "screenshots",
            artifact.screenshot_id,
            session_id=artifact.session_id,
            created_at=created_at,
            body=artifact.to_dict(),
            payload=artifact.data,
        )

    async def save_video_chunk(self, chunk: VideoChunk, *, created_at: float | None = None) -> None:
        await self._write(
            "videoChunks",
            chunk.chunk_id,
            session_id=chunk.session_id,
            created_at=created_at,
            body=chunk.to_dict(),
            payload=chunk.data,
        )

    async def save_upload_job(self, job: UploadJob) -> None:
        await self._write(
            "uploadJobs",
            job.job_id,
            session_id=None,
            created_at=job.created_at,
            body=job.to_dict(),
        )

    async def delete_session(self, session_id: str) -> int:
        """Remove a session together with every artifact it owns."""

        def _delete() -> int:
            removed = 0
            for collection in ("actions", "screenshots", "videoChunks"):
                records = self._backend.by_session(collection, session_id)
                removed += self._backend.delete(collection, [r.record_id for r in records])
            removed += self._backend.delete("sessions", [session_id])
            return removed

        try:
            return await asyncio.to_thread(_delete)
        except Exception as exc:
            raise PersistenceFailure(f"Failed to delete session {session_id}: {exc}") from exc

    async def _write(
        self,
        collection: str,
        record_id: str,
        *,
        session_id: str | None,
        created_at: float | None,
        body: Mapping[str, Any],
        payload: bytes | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._backend.upsert,
                collection,
                record_id,
                session_id=session_id,
                created_at=created_at if created_at is not None else wall_time(),
                body=body,
                payload=payload,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise PersistenceFailure(
                f"Failed to write {collection} record {record_id}: {exc}"
            ) from exc
        self._schedule_eviction(collection)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------
    def _schedule_eviction(self, collection: str) -> None:
        if self._limits.for_collection(collection) is None:
            return
        if collection in self._eviction_pending:
            return
        self._eviction_pending.add(collection)
        task = asyncio.get_running_loop().create_task(self._evict(collection))
        self._eviction_tasks.add(task)
        task.add_done_callback(self._eviction_tasks.discard)

    async def _evict(self, collection: str) -> None:
        self._eviction_pending.discard(collection)
        limit = self._limits.for_collection(collection)
        if limit is None:
            return
        try:
            removed = await asyncio.to_thread(self._backend.evict_oldest, collection, limit)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Eviction failed for %s", collection)
            return
        if removed:
            logger.debug("Evicted %d oldest %s records", removed, collection)

    async def wait_for_eviction(self) -> None:
        while self._eviction_tasks:
            await asyncio.gather(*list(self._eviction_tasks), return_exceptions=True)

    async def enforce_limits(self) -> dict[str, int]:
        """Evict every collection down to its limit and report removals."""

        removed: dict[str, int] = {}
        for collection in COLLECTIONS:
            limit = self._limits.for_collection(collection)
            if limit is None:
                continue
            try:
                removed[collection] = await asyncio.to_thread(
                    self._backend.evict_oldest, collection, limit
                )
            except Exception:
                logger.exception("Eviction failed for %s", collection)
                removed[collection] = 0
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_session(self, session_id: str) -> SessionState | None:
        record = await self._read(self._backend.get, "sessions", session_id)
        return SessionState.from_dict(record.body) if record is not None else None

    async def list_sessions(self) -> list[SessionState]:
        records = await self._read(self._backend.all, "sessions")
        return [SessionState.from_dict(record.body) for record in records]

    async def actions_for(self, session_id: str) -> list[ActionEvent]:
        records = await self._read(self._backend.by_session, "actions", session_id)
        actions = [ActionEvent.from_dict(record.body) for record in records]
        return sorted(actions, key=lambda item: item.happened_at)

    async def screenshots_for(self, session_id: str) -> list[ScreenshotArtifact]:
        records = await self._read(self._backend.by_session, "screenshots", session_id)
        shots = [ScreenshotArtifact.from_dict(r.body, data=r.payload) for r in records]
        return sorted(shots, key=lambda item: item.wall_clock_captured_at)

    async def video_chunks_for(self, session_id: str) -> list[VideoChunk]:
        # Backend order is creation time with insertion order as tie-breaker.
        records = await self._read(self._backend.by_session, "videoChunks", session_id)
        return [VideoChunk.from_dict(r.body, data=r.payload) for r in records]

    async def list_upload_jobs(self, status: UploadStatus | None = None) -> list[UploadJob]:
        records = await self._read(self._backend.all, "uploadJobs")
        jobs = [UploadJob.from_dict(record.body) for record in records]
        if status is not None:
            jobs = [job for job in jobs if job.status is status]
        return jobs

    async def count(self, collection: str) -> int:
        return await self._read(self._backend.count, collection)

    async def record_ids(self, collection: str) -> list[str]:
        records = await self._read(self._backend.all, collection)
        return [record.record_id for record in records]

    async def _read(self, func, *args: Any):
        try:
            return await asyncio.to_thread(func, *args)
        except (KeyError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Store read failed: {exc}") from exc

    def close(self) -> None:
        self._backend.close()


def open_store(
    db_path: Path | str | None, *, limits: StoreLimits | None = None
) -> PersistentStore:
    """Return a store backed by SQLite, or by memory when *db_path* is ``None``."""

    backend: KeyedStore = (
        SqliteKeyedStore(db_path) if db_path is not None else MemoryKeyedStore()
    )
    return PersistentStore(backend, limits=limits)


__all__ = [
    "KeyedStore",
    "MemoryKeyedStore",
    "PersistentStore",
    "SqliteKeyedStore",
    "StoredRecord",
    "open_store",
]
