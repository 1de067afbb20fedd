"""Chunked video encoder capability and its PyAV implementation."""
from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Callable, Iterable

import av
import numpy as np

from .config import EncodingProfile
from .errors import EncoderUnsupported

logger = logging.getLogger(__name__)

_CODECS_REQUIRE_EVEN_DIMENSIONS: frozenset[str] = frozenset(
    {"libx264", "h264", "libvpx", "libvpx-vp9", "mpeg4"}
)


@dataclass(frozen=True, slots=True)
class EncodedSegment:
    """Encoder output for one time slice."""

    data: bytes = field(repr=False)
    timecode: float
    mime_type: str


SegmentListener = Callable[[EncodedSegment], None]
ErrorListener = Callable[[BaseException], None]


class ChunkEncoder(ABC):
    """Push-based encoder emitting one segment per time slice to subscribers."""

    def __init__(self) -> None:
        self._listeners: list[SegmentListener] = []
        self._error_listeners: list[ErrorListener] = []
        self._paused = False

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    @abstractmethod
    def active(self) -> bool:  # pragma: no cover - interface only
        raise NotImplementedError

    def subscribe(
        self,
        listener: SegmentListener,
        *,
        on_error: ErrorListener | None = None,
    ) -> Callable[[], None]:
        """Register *listener*; the returned callable removes it again."""

        self._listeners.append(listener)
        if on_error is not None:
            self._error_listeners.append(on_error)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
            if on_error is not None and on_error in self._error_listeners:
                self._error_listeners.remove(on_error)

        return _unsubscribe

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    @abstractmethod
    def is_supported(self, profile: EncodingProfile) -> bool:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    def start(
        self,
        profile: EncodingProfile,
        timeslice_ms: int,
        *,
        bitrate: int | None = None,
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    @abstractmethod
    async def write_frame(self, frame: np.ndarray, timestamp: float) -> None:  # pragma: no cover
        raise NotImplementedError

    @abstractmethod
    async def stop(self) -> None:  # pragma: no cover - interface only
        """Stop encoding; return once the final segment has been emitted."""

        raise NotImplementedError

    def _emit(self, segment: EncodedSegment) -> None:
        for listener in list(self._listeners):
            try:
                listener(segment)
            except Exception:
                logger.exception("Segment listener failed")

    def _emit_error(self, exc: BaseException) -> None:
        if not self._error_listeners:
            logger.error("Encoder error: %s", exc)
            return
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("Encoder error listener failed")


def select_profile(
    encoder: ChunkEncoder, candidates: Iterable[EncodingProfile]
) -> EncodingProfile:
    """Return the first candidate *encoder* accepts."""

    attempted: list[str] = []
    for candidate in candidates:
        attempted.append(candidate.mime_type)
        if encoder.is_supported(candidate):
            return candidate
    detail = ", ".join(attempted) if attempted else "none"
    raise EncoderUnsupported(f"No supported encoding among candidates: {detail}")


def _prepare_frame(array: np.ndarray) -> np.ndarray | None:
    frame_array = np.asarray(array)
    if frame_array.ndim == 2:
        frame_array = np.repeat(frame_array[:, :, np.newaxis], 3, axis=2)
    elif frame_array.ndim == 3:
        if frame_array.shape[2] == 1:
            frame_array = np.repeat(frame_array, 3, axis=2)
        elif frame_array.shape[2] > 3:
            frame_array = frame_array[:, :, :3]
    else:
        return None
    if frame_array.dtype != np.uint8:
        frame_array = np.clip(frame_array, 0, 255).astype(np.uint8)
    if not frame_array.flags.c_contiguous:
        frame_array = np.ascontiguousarray(frame_array)
    return frame_array


def _fit_dimensions(
    width: int, height: int, max_width: int | None, max_height: int | None
) -> tuple[int, int]:
    scale = 1.0
    if max_width and width > max_width:
        scale = min(scale, max_width / width)
    if max_height and height > max_height:
        scale = min(scale, max_height / height)
    return max(1, int(width * scale)), max(1, int(height * scale))


class _SliceWriter:
    """In-memory container receiving the frames of one time slice."""

    def __init__(
        self,
        profile: EncodingProfile,
        *,
        width: int,
        height: int,
        frame_rate: int,
        bitrate: int | None,
    ) -> None:
        if profile.codec in _CODECS_REQUIRE_EVEN_DIMENSIONS:
            width -= width % 2
            height -= height % 2
        if width <= 0 or height <= 0:
            raise ValueError("invalid frame dimensions for video encoder")
        self._buffer = io.BytesIO()
        self._container = av.open(self._buffer, mode="w", format=profile.container)
        try:
            self._stream = self._container.add_stream(profile.codec, rate=Fraction(frame_rate))
            self._stream.width = width
            self._stream.height = height
            self._stream.pix_fmt = "yuv420p"
            if bitrate:
                self._stream.bit_rate = int(bitrate)
        except Exception:
            self._container.close()
            raise
        self.frame_count = 0

    def add_frame(self, array: np.ndarray) -> None:
        frame = av.VideoFrame.from_ndarray(array, format="rgb24")
        frame = frame.reformat(
            width=self._stream.width, height=self._stream.height, format="yuv420p"
        )
        frame.pts = self.frame_count
        for packet in self._stream.encode(frame):
            self._container.mux(packet)
        self.frame_count += 1

    def finish(self) -> bytes:
        for packet in self._stream.encode():
            self._container.mux(packet)
        self._container.close()
        return self._buffer.getvalue()

    def abort(self) -> None:
        try:
            self._container.close()
        except (av.FFmpegError, ValueError) as exc:
            logger.debug("Failed to close aborted slice container: %s", exc)


class AvChunkEncoder(ChunkEncoder):
    """Encodes each time slice into its own PyAV container."""

    def __init__(
        self,
        *,
        frame_rate: int = 30,
        max_width: int | None = None,
        max_height: int | None = None,
    ) -> None:
        super().__init__()
        self._frame_rate = max(1, int(frame_rate))
        self._max_width = max_width
        self._max_height = max_height
        self._profile: EncodingProfile | None = None
        self._bitrate: int | None = None
        self._timeslice_s = 0.0
        self._started_at: float | None = None
        self._writer: _SliceWriter | None = None
        self._slice_started: float = 0.0
        self._lock = asyncio.Lock()
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def profile(self) -> EncodingProfile | None:
        return self._profile

    def is_supported(self, profile: EncodingProfile) -> bool:
        if profile.container not in av.formats_available:
            logger.debug("Container %s unavailable", profile.container)
            return False
        try:
            context = av.CodecContext.create(profile.codec, "w")
        except av.FFmpegError as exc:
            logger.debug("Codec %s unavailable: %s", profile.codec, exc)
            return False
        except ValueError as exc:
            logger.debug("Failed to initialise codec %s: %s", profile.codec, exc)
            return False
        if not getattr(context, "is_encoder", True):
            logger.debug("Codec %s is not an encoder", profile.codec)
            return False
        return True

    def start(
        self,
        profile: EncodingProfile,
        timeslice_ms: int,
        *,
        bitrate: int | None = None,
    ) -> None:
        if self._active:
            raise RuntimeError("Encoder is already running")
        self._profile = profile
        self._bitrate = bitrate
        self._timeslice_s = max(0.1, timeslice_ms / 1000.0)
        self._started_at = time.perf_counter()
        self._writer = None
        self._paused = False
        self._active = True

    async def write_frame(self, frame: np.ndarray, timestamp: float) -> None:
        if not self._active or self._paused:
            return
        async with self._lock:
            if not self._active:
                return
            try:
                segment = await asyncio.to_thread(self._encode, frame)
            except Exception as exc:
                self._drop_writer()
                self._emit_error(exc)
                return
        if segment is not None:
            self._emit(segment)

    async def stop(self) -> None:
        async with self._lock:
            if not self._active:
                return
            self._active = False
            try:
                segment = await asyncio.to_thread(self._close_slice)
            except Exception as exc:
                self._drop_writer()
                self._emit_error(exc)
                return
        if segment is not None:
            self._emit(segment)

    def _elapsed(self) -> float:
        started = self._started_at if self._started_at is not None else time.perf_counter()
        return time.perf_counter() - started

    def _encode(self, frame: np.ndarray) -> EncodedSegment | None:
        array = _prepare_frame(frame)
        if array is None:
            raise ValueError("Frame must be a 2D or 3D array")
        profile = self._profile
        if profile is None:
            raise RuntimeError("Encoder has not been started")
        if self._writer is None:
            height, width = array.shape[:2]
            width, height = _fit_dimensions(width, height, self._max_width, self._max_height)
            self._writer = _SliceWriter(
                profile,
                width=width,
                height=height,
                frame_rate=self._frame_rate,
                bitrate=self._bitrate,
            )
            self._slice_started = self._elapsed()
        self._writer.add_frame(array)
        if self._elapsed() - self._slice_started >= self._timeslice_s:
            return self._close_slice()
        return None

    def _close_slice(self) -> EncodedSegment | None:
        writer = self._writer
        if writer is None or self._profile is None:
            return None
        self._writer = None
        data = writer.finish()
        return EncodedSegment(
            data=data,
            timecode=round(self._slice_started * 1000.0, 3),
            mime_type=self._profile.mime_type,
        )

    def _drop_writer(self) -> None:
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.abort()


__all__ = [
    "AvChunkEncoder",
    "ChunkEncoder",
    "EncodedSegment",
    "ErrorListener",
    "SegmentListener",
    "select_profile",
]
