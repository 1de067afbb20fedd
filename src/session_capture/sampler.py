"""Still extraction around user actions."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

import numpy as np
import simplejpeg

from .capture import PreviewSurface
from .errors import PersistenceFailure
from .models import (
    ActionEvent,
    ScreenshotArtifact,
    ScreenshotPhase,
    SessionState,
    SessionStatus,
    new_id,
    wall_time,
)
from .store import PersistentStore

logger = logging.getLogger(__name__)


def encode_jpeg(frame: np.ndarray, *, quality: int) -> bytes:
    """Encode an RGB frame as JPEG bytes."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3 and array.shape[2] > 3:
        array = array[:, :, :3]
    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)
    array = np.ascontiguousarray(array)
    return simplejpeg.encode_jpeg(array, quality=int(quality), colorspace="RGB")


class ScreenshotSampler:
    """Captures at most one still per session, action and phase."""

    def __init__(
        self,
        store: PersistentStore,
        preview: PreviewSurface,
        session: Callable[[], SessionState],
        *,
        after_settle_ms: int = 150,
        jpeg_quality: int = 85,
        clock: Callable[[], float] = wall_time,
    ) -> None:
        self._store = store
        self._preview = preview
        self._session = session
        self._after_settle_s = max(0, after_settle_ms) / 1000.0
        self._jpeg_quality = jpeg_quality
        self._clock = clock
        self._sampled: set[tuple[str, str, ScreenshotPhase]] = set()

    def settle_delay(self, phase: ScreenshotPhase) -> float:
        return self._after_settle_s if phase is ScreenshotPhase.AFTER else 0.0

    def was_sampled(self, session_id: str, action_id: str, phase: ScreenshotPhase) -> bool:
        return (session_id, action_id, phase) in self._sampled

    def forget(self, session_id: str) -> None:
        self._sampled = {key for key in self._sampled if key[0] != session_id}

    def claim(
        self,
        action: ActionEvent,
        phase: ScreenshotPhase,
        session: SessionState | None = None,
    ) -> str | None:
        """Reserve the (session, action, phase) still and return the session id.

        *session* is the state the action was accepted under; the live state
        is consulted when it is omitted. Returns ``None`` when nothing should
        be captured.
        """

        if session is None:
            session = self._session()
        if session.status is not SessionStatus.RECORDING or session.session_id is None:
            return None
        if not self._preview.has_frame:
            return None
        key = (session.session_id, action.action_id, phase)
        if key in self._sampled:
            return None
        self._sampled.add(key)
        return session.session_id

    async def sample(
        self,
        action: ActionEvent,
        phase: ScreenshotPhase,
        *,
        session: SessionState | None = None,
    ) -> ScreenshotArtifact | None:
        session_id = self.claim(action, phase, session)
        if session_id is None:
            return None
        return await self.capture(action, phase, session_id)

    async def capture(
        self, action: ActionEvent, phase: ScreenshotPhase, session_id: str
    ) -> ScreenshotArtifact | None:
        """Extract, encode and persist a still already reserved with :meth:`claim`."""

        delay = self.settle_delay(phase)
        if delay:
            await asyncio.sleep(delay)
        snapshot = self._preview.snapshot()
        if snapshot is None:
            return None
        frame, stream_time = snapshot
        try:
            payload = await asyncio.to_thread(encode_jpeg, frame, quality=self._jpeg_quality)
        except (ValueError, RuntimeError) as exc:
            logger.warning("Failed to encode %s still for %s: %s", phase.value, action.action_id, exc)
            return None
        captured_at = self._clock()
        artifact = ScreenshotArtifact(
            screenshot_id=new_id(),
            session_id=session_id,
            action_id=action.action_id,
            phase=phase,
            wall_clock_captured_at=captured_at,
            capture_latency_ms=(captured_at - action.happened_at) * 1000.0,
            stream_timestamp=stream_time,
            mime_type="image/jpeg",
            data=payload,
        )
        try:
            await self._store.save_screenshot(artifact, created_at=captured_at)
        except PersistenceFailure as exc:
            logger.warning("Dropping screenshot %s: %s", artifact.screenshot_id, exc)
            return None
        return artifact

    async def sample_pair(
        self, action: ActionEvent
    ) -> tuple[ScreenshotArtifact | None, ScreenshotArtifact | None]:
        before, after = await asyncio.gather(
            self.sample(action, ScreenshotPhase.BEFORE),
            self.sample(action, ScreenshotPhase.AFTER),
        )
        return before, after


__all__ = ["ScreenshotSampler", "encode_jpeg"]
