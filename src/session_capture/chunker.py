"""Ordered persistence of encoder segments."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .encoding import ChunkEncoder, EncodedSegment
from .errors import PersistenceFailure
from .models import VideoChunk, new_id, wall_time
from .pending import PendingWrites
from .store import PersistentStore

logger = logging.getLogger(__name__)


class VideoChunker:
    """Turns encoder segments into video chunk records in emission order.

    Each write is chained behind the previous one so chunks reach the store in
    the order the encoder produced them, while the encoder itself never waits
    on persistence.
    """

    def __init__(
        self,
        store: PersistentStore,
        session_id: str,
        *,
        pending: PendingWrites,
        bitrate: int | None = None,
        clock: Callable[[], float] = wall_time,
    ) -> None:
        self._store = store
        self._session_id = session_id
        self._pending = pending
        self._bitrate = bitrate
        self._clock = clock
        self._tail: asyncio.Future[None] | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_timecode: float | None = None
        self.written = 0
        self.failed = 0
        self.discarded = 0
        self.encoder_errors = 0

    @property
    def session_id(self) -> str:
        return self._session_id

    def attach(self, encoder: ChunkEncoder) -> None:
        self.detach()
        self._unsubscribe = encoder.subscribe(self._on_segment, on_error=self._on_error)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_segment(self, segment: EncodedSegment) -> None:
        if not segment.data:
            self.discarded += 1
            return
        if self._last_timecode is not None and segment.timecode <= self._last_timecode:
            logger.warning(
                "Encoder timecode %.3f did not advance past %.3f for session %s",
                segment.timecode,
                self._last_timecode,
                self._session_id,
            )
        self._last_timecode = segment.timecode
        chunk = VideoChunk(
            chunk_id=new_id(),
            session_id=self._session_id,
            timecode=float(segment.timecode),
            wall_clock_captured_at=self._clock(),
            mime_type=segment.mime_type,
            bitrate=self._bitrate,
            data=segment.data,
        )
        previous = self._tail
        self._tail = self._pending.track(self._persist(chunk, previous))

    async def _persist(self, chunk: VideoChunk, previous: asyncio.Future[None] | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self._store.save_video_chunk(chunk, created_at=chunk.wall_clock_captured_at)
        except PersistenceFailure as exc:
            self.failed += 1
            logger.warning("Dropping video chunk %s: %s", chunk.chunk_id, exc)
            return
        self.written += 1

    def _on_error(self, exc: BaseException) -> None:
        self.encoder_errors += 1
        logger.error("Encoder error during session %s: %s", self._session_id, exc)

    async def drain(self) -> None:
        tail = self._tail
        if tail is not None and not tail.done():
            await asyncio.wait([tail])


__all__ = ["VideoChunker"]
