from __future__ import annotations

import asyncio

import numpy as np

from session_capture.capture import PreviewSurface
from session_capture.models import (
    IDLE_SESSION,
    ActionEvent,
    ScreenshotPhase,
    SessionState,
    SessionStatus,
)
from session_capture.sampler import ScreenshotSampler, encode_jpeg
from session_capture.store import open_store

RECORDING = SessionState(status=SessionStatus.RECORDING, session_id="s1", started_at=1.0)


def _preview_with_frame() -> PreviewSurface:
    preview = PreviewSurface()
    preview.update(np.full((32, 48, 3), 120, dtype=np.uint8), 2.5)
    return preview


def _action(action_id: str = "a1") -> ActionEvent:
    return ActionEvent(action_id=action_id, type="click", happened_at=10.0)


def test_encode_jpeg_accepts_grayscale_and_float_frames() -> None:
    gray = encode_jpeg(np.zeros((16, 16)), quality=80)
    rgba = encode_jpeg(np.zeros((16, 16, 4), dtype=np.float32), quality=80)
    assert gray.startswith(b"\xff\xd8")
    assert rgba.startswith(b"\xff\xd8")


def test_each_phase_is_sampled_once_per_action() -> None:
    store = open_store(None)
    sampler = ScreenshotSampler(
        store, _preview_with_frame(), lambda: RECORDING, after_settle_ms=0, clock=lambda: 10.25
    )

    async def scenario():
        first = await sampler.sample_pair(_action())
        second = await sampler.sample_pair(_action())
        return first, second, await store.screenshots_for("s1")

    (before, after), (again_before, again_after), stored = asyncio.run(scenario())
    assert before is not None and after is not None
    assert again_before is None and again_after is None
    assert sorted(shot.phase for shot in stored) == [ScreenshotPhase.AFTER, ScreenshotPhase.BEFORE]
    assert before.capture_latency_ms == 250.0
    assert before.stream_timestamp == 2.5
    assert before.data is not None and before.data.startswith(b"\xff\xd8")


def test_concurrent_duplicates_produce_a_single_still() -> None:
    store = open_store(None)
    sampler = ScreenshotSampler(store, _preview_with_frame(), lambda: RECORDING, after_settle_ms=5)

    async def scenario() -> int:
        await asyncio.gather(
            sampler.sample(_action(), ScreenshotPhase.AFTER),
            sampler.sample(_action(), ScreenshotPhase.AFTER),
        )
        return await store.count("screenshots")

    assert asyncio.run(scenario()) == 1


def test_sampling_is_a_no_op_outside_recording() -> None:
    store = open_store(None)
    sampler = ScreenshotSampler(store, _preview_with_frame(), lambda: IDLE_SESSION)

    async def scenario():
        result = await sampler.sample(_action(), ScreenshotPhase.BEFORE)
        return result, await store.count("screenshots")

    assert asyncio.run(scenario()) == (None, 0)
    assert sampler.was_sampled("s1", "a1", ScreenshotPhase.BEFORE) is False


def test_sampling_needs_a_rendered_frame() -> None:
    store = open_store(None)
    sampler = ScreenshotSampler(store, PreviewSurface(), lambda: RECORDING)
    assert asyncio.run(sampler.sample(_action(), ScreenshotPhase.BEFORE)) is None


def test_after_phase_waits_for_the_settle_delay() -> None:
    sampler = ScreenshotSampler(
        open_store(None), PreviewSurface(), lambda: RECORDING, after_settle_ms=150
    )
    assert sampler.settle_delay(ScreenshotPhase.AFTER) == 0.15
    assert sampler.settle_delay(ScreenshotPhase.BEFORE) == 0.0


def test_forget_releases_a_finished_session() -> None:
    store = open_store(None)
    sampler = ScreenshotSampler(store, _preview_with_frame(), lambda: RECORDING)
    asyncio.run(sampler.sample(_action(), ScreenshotPhase.BEFORE))
    assert sampler.was_sampled("s1", "a1", ScreenshotPhase.BEFORE)
    sampler.forget("s1")
    assert not sampler.was_sampled("s1", "a1", ScreenshotPhase.BEFORE)


def test_claimed_stills_are_captured_after_recording_stops() -> None:
    store = open_store(None)
    live = {"state": RECORDING}
    sampler = ScreenshotSampler(
        store, _preview_with_frame(), lambda: live["state"], after_settle_ms=0
    )

    async def scenario():
        session_id = sampler.claim(_action(), ScreenshotPhase.BEFORE, RECORDING)
        live["state"] = IDLE_SESSION
        duplicate = sampler.claim(_action(), ScreenshotPhase.BEFORE, RECORDING)
        late = sampler.claim(_action(), ScreenshotPhase.AFTER)
        shot = await sampler.capture(_action(), ScreenshotPhase.BEFORE, session_id)
        return session_id, duplicate, late, shot, await store.count("screenshots")

    session_id, duplicate, late, shot, stored = asyncio.run(scenario())
    assert session_id == "s1"
    assert duplicate is None
    assert late is None
    assert shot is not None and shot.session_id == "s1"
    assert stored == 1
