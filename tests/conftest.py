"""Shared fakes for exercising the capture pipeline without real devices."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pytest

from session_capture.capture import CaptureStream, SourceSelector, StreamProvider
from session_capture.config import EncodingProfile, RecorderSettings
from session_capture.encoding import ChunkEncoder, EncodedSegment
from session_capture.errors import AcquisitionCancelled, CaptureUnavailable
from session_capture.models import SelectedSource


class FakeStream(CaptureStream):
    def __init__(self, stream_id: str, shape: tuple[int, int] = (48, 64)) -> None:
        super().__init__(stream_id)
        self._shape = shape
        self.frames_read = 0
        self.stop_calls = 0

    async def read_frame(self) -> np.ndarray:
        self.frames_read += 1
        height, width = self._shape
        value = (self.frames_read * 7) % 255
        return np.full((height, width, 3), value, dtype=np.uint8)

    async def stop(self) -> None:
        self.stop_calls += 1
        await super().stop()

    def revoke(self) -> None:
        self._notify_ended()


class FakeStreamProvider(StreamProvider):
    def __init__(self, *, enabled: bool = True) -> None:
        self.enabled = enabled
        self.opened: list[FakeStream] = []

    def available(self) -> bool:
        return self.enabled

    async def open(self, source: SelectedSource) -> CaptureStream:
        if not self.enabled:
            raise CaptureUnavailable("fake capture disabled")
        if not source.stream_id:
            raise AcquisitionCancelled("no stream granted")
        stream = FakeStream(source.stream_id)
        self.opened.append(stream)
        return stream


class FakeEncoder(ChunkEncoder):
    """Emits one segment every few frames and a final segment on stop."""

    def __init__(
        self,
        *,
        supported: Iterable[str] | None = None,
        frames_per_segment: int = 3,
        empty_final: bool = False,
        hang_on_stop: bool = False,
        failing_writes: int = 0,
    ) -> None:
        super().__init__()
        self._failing_writes = failing_writes
        self._supported = set(supported) if supported is not None else None
        self._frames_per_segment = frames_per_segment
        self._empty_final = empty_final
        self._hang_on_stop = hang_on_stop
        self._active = False
        self._profile: EncodingProfile | None = None
        self.frames = 0
        self.segments = 0
        self.stop_calls = 0
        self.bitrate: int | None = None

    @property
    def active(self) -> bool:
        return self._active

    def is_supported(self, profile: EncodingProfile) -> bool:
        return self._supported is None or profile.mime_type in self._supported

    def start(self, profile: EncodingProfile, timeslice_ms: int, *, bitrate: int | None = None) -> None:
        self._profile = profile
        self.bitrate = bitrate
        self._active = True

    async def write_frame(self, frame: np.ndarray, timestamp: float) -> None:
        if not self._active or self._paused:
            return
        if self._failing_writes:
            self._failing_writes -= 1
            raise RuntimeError("encoder rejected frame")
        self.frames += 1
        if self.frames % self._frames_per_segment == 0:
            self._emit_segment(b"segment-%d" % self.segments)

    async def stop(self) -> None:
        self.stop_calls += 1
        if self._hang_on_stop:
            await asyncio.Event().wait()
        if not self._active:
            return
        self._active = False
        self._emit_segment(b"" if self._empty_final else b"final-%d" % self.segments)

    def emit(self, data: bytes, timecode: float) -> None:
        assert self._profile is not None
        self._emit(EncodedSegment(data=data, timecode=timecode, mime_type=self._profile.mime_type))

    def _emit_segment(self, data: bytes) -> None:
        assert self._profile is not None
        self._emit(
            EncodedSegment(
                data=data,
                timecode=float(self.segments * 1000),
                mime_type=self._profile.mime_type,
            )
        )
        self.segments += 1


class DecliningSelector(SourceSelector):
    def __init__(self) -> None:
        self.calls = 0

    async def choose(self, sources: Sequence[str]) -> str:
        self.calls += 1
        raise AcquisitionCancelled("user dismissed the picker")


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* until it is true or fail after *timeout* seconds."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def fast_settings() -> RecorderSettings:
    return RecorderSettings(
        timeslice_ms=100,
        frame_rate=60,
        video_width=64,
        video_height=48,
        after_settle_ms=0,
        session_write_retry_delay_s=0,
    )


@pytest.fixture
def exports_dir(tmp_path: Path) -> Path:
    return tmp_path / "exports"
