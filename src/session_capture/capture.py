"""Capture source abstractions."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Sequence

import numpy as np

from .errors import AcquisitionCancelled, CaptureUnavailable
from .models import CaptureSourceType, SelectedSource

logger = logging.getLogger(__name__)

EndedCallback = Callable[["CaptureStream"], None]


class CaptureStream(ABC):
    """Live stream handle producing RGB frames until stopped or revoked."""

    def __init__(self, stream_id: str) -> None:
        self._stream_id = stream_id
        self._active = True
        self._opened_at = time.perf_counter()
        self._ended_callbacks: list[EndedCallback] = []

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def active(self) -> bool:
        return self._active

    def stream_time(self) -> float:
        """Seconds elapsed along the stream's own timeline."""

        return time.perf_counter() - self._opened_at

    @abstractmethod
    async def read_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def stop(self) -> None:
        """Stop the tracks; an owner-initiated stop does not signal ``ended``."""

        self._active = False

    def on_ended(self, callback: EndedCallback) -> None:
        self._ended_callbacks.append(callback)

    def _notify_ended(self) -> None:
        if not self._active:
            return
        self._active = False
        for callback in list(self._ended_callbacks):
            try:
                callback(self)
            except Exception:  # pragma: no cover - callbacks are host owned
                logger.exception("Ended callback failed for stream %s", self._stream_id)


class StreamProvider(ABC):
    """Platform capability that turns a chosen source into a live stream."""

    @abstractmethod
    def available(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def open(self, source: SelectedSource) -> CaptureStream:  # pragma: no cover
        """Open *source*; raise :class:`CaptureUnavailable` or :class:`AcquisitionCancelled`."""

        raise NotImplementedError


class SourceSelector(ABC):
    """Lets the user pick a capture source and yields its stream handle."""

    @abstractmethod
    async def choose(self, sources: Sequence[str]) -> str:  # pragma: no cover
        raise NotImplementedError


class PreviewSurface:
    """Holds the most recently decoded frame of the live stream."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: np.ndarray | None = None
        self._stream_time: float | None = None
        self._frame_count = 0

    @property
    def has_frame(self) -> bool:
        with self._lock:
            return self._frame is not None

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def update(self, frame: np.ndarray, stream_time: float | None) -> None:
        with self._lock:
            self._frame = frame
            self._stream_time = stream_time
            self._frame_count += 1

    def snapshot(self) -> tuple[np.ndarray, float | None] | None:
        with self._lock:
            if self._frame is None:
                return None
            return self._frame.copy(), self._stream_time

    def clear(self) -> None:
        with self._lock:
            self._frame = None
            self._stream_time = None


class SyntheticCaptureStream(CaptureStream):
    """Generates a moving gradient test pattern."""

    def __init__(self, stream_id: str, width: int = 640, height: int = 480) -> None:
        super().__init__(stream_id)
        self._width = int(width)
        self._height = int(height)
        self._start = time.perf_counter()

    async def read_frame(self) -> np.ndarray:
        if not self._active:
            raise CaptureUnavailable(f"Stream {self.stream_id} is no longer active")
        elapsed = time.perf_counter() - self._start
        horizontal = np.linspace(0, 255, self._width, dtype=np.uint8)
        vertical = np.linspace(0, 255, self._height, dtype=np.uint8).reshape(-1, 1)
        red = np.tile(horizontal, (self._height, 1))
        green = np.roll(red, int(elapsed * 10), axis=1)
        blue = np.tile(vertical, (1, self._width))
        frame = np.stack([red, green, blue], axis=2)
        return frame.astype(np.uint8)

    def revoke(self) -> None:
        """Simulate the source being closed outside of the recorder."""

        self._notify_ended()


class SyntheticStreamProvider(StreamProvider):
    """Opens :class:`SyntheticCaptureStream` instances for any stream id."""

    def __init__(
        self,
        width: int = 640,
        height: int = 480,
        *,
        resolution: tuple[int, int] | None = None,
        enabled: bool = True,
    ) -> None:
        if resolution is not None:
            width, height = resolution
        self._width = int(width)
        self._height = int(height)
        self._enabled = enabled
        self.opened: list[SyntheticCaptureStream] = []

    def available(self) -> bool:
        return self._enabled

    async def open(self, source: SelectedSource) -> CaptureStream:
        if not self._enabled:
            raise CaptureUnavailable("Synthetic capture is disabled")
        if not source.stream_id:
            raise AcquisitionCancelled("No stream was granted for the selected source")
        await asyncio.sleep(0)
        stream = SyntheticCaptureStream(source.stream_id, self._width, self._height)
        self.opened.append(stream)
        return stream


class AutoApproveSelector(SourceSelector):
    """Grants the first offered source without prompting."""

    def __init__(self, prefix: str = "synthetic") -> None:
        self._prefix = prefix

    async def choose(self, sources: Sequence[str]) -> str:
        if not sources:
            raise CaptureUnavailable("No capture sources were offered")
        try:
            kind = CaptureSourceType(sources[0])
        except ValueError as exc:
            raise CaptureUnavailable(f"Unsupported capture source {sources[0]!r}") from exc
        return f"{self._prefix}-{kind.value}-{uuid.uuid4().hex[:12]}"


__all__ = [
    "AutoApproveSelector",
    "CaptureStream",
    "PreviewSurface",
    "SourceSelector",
    "StreamProvider",
    "SyntheticCaptureStream",
    "SyntheticStreamProvider",
]
