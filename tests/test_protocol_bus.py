from __future__ import annotations

import asyncio

import pytest

from session_capture.bus import MessageBus, ReadyGatedChannel
from session_capture.errors import MessageDeliveryFailure
from session_capture.models import SessionState, SessionStatus
from session_capture.protocol import (
    Message,
    MessageKind,
    ack,
    recognise,
    session_from,
    status_message,
)


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "capture/start",
        {"payload": {}},
        {"type": "other/start"},
        {"type": "capture/bogus"},
        {"type": 7},
        {"type": "capture/start", "payload": ["not", "a", "mapping"]},
    ],
)
def test_recognise_drops_foreign_or_malformed_messages(raw) -> None:
    assert recognise(raw) is None


def test_recognise_accepts_known_kinds() -> None:
    message = recognise({"type": "capture/action", "payload": {"action_id": "a1"}})
    assert message is not None
    assert message.kind is MessageKind.ACTION
    assert message.payload == {"action_id": "a1"}
    assert recognise({"type": "capture/status-request"}) == Message(MessageKind.STATUS_REQUEST)


def test_status_and_ack_carry_sessions() -> None:
    state = SessionState(status=SessionStatus.RECORDING, session_id="s1", started_at=1.0)
    assert session_from(status_message(state)) == state
    response = ack(session=state, export=None, export_error="boom")
    assert response.payload["ok"] is True
    assert "export" not in response.payload
    assert response.payload["export_error"] == "boom"
    assert session_from(response) == state
    assert session_from(ack(False)) is None
    assert status_message(state).to_dict()["type"] == "capture/status"


def test_send_to_missing_context_fails() -> None:
    bus = MessageBus()
    with pytest.raises(MessageDeliveryFailure):
        asyncio.run(bus.send("host", Message(MessageKind.STATUS_REQUEST)))


def test_send_wraps_handler_errors() -> None:
    bus = MessageBus()

    async def broken(message: Message) -> Message | None:
        raise RuntimeError("context crashed")

    bus.register("host", broken)
    with pytest.raises(MessageDeliveryFailure) as excinfo:
        asyncio.run(bus.send("host", Message(MessageKind.STATUS_REQUEST)))
    assert "context crashed" in str(excinfo.value)


def test_broadcast_reaches_surfaces_despite_a_failing_one() -> None:
    bus = MessageBus()
    received: list[str] = []

    async def healthy(message: Message) -> None:
        received.append(message.kind.value)

    async def closed(message: Message) -> None:
        raise ConnectionError("popup closed")

    async def context(message: Message) -> None:
        received.append("context")

    bus.register("popup", closed, role="surface")
    bus.register("panel", healthy, role="surface")
    bus.register("host", context)

    delivered = asyncio.run(bus.broadcast(status_message(SessionState())))
    assert delivered == 1
    assert received == ["capture/status"]


def test_register_rejects_unknown_roles() -> None:
    bus = MessageBus()

    async def handler(message: Message) -> None:
        return None

    with pytest.raises(ValueError):
        bus.register("x", handler, role="window")


def test_request_completes_only_on_matching_response() -> None:
    bus = MessageBus()

    async def scenario() -> Message:
        async def coordinator(message: Message) -> None:
            async def reply() -> None:
                await asyncio.sleep(0)
                stale = Message(MessageKind.STREAM_RESPONSE, {"request_id": "stale"})
                assert bus.resolve(stale) is False
                bus.resolve(
                    Message(
                        MessageKind.STREAM_RESPONSE,
                        {"request_id": message.request_id, "stream_id": "granted"},
                    )
                )

            asyncio.get_running_loop().create_task(reply())

        bus.register("coordinator", coordinator)
        response = await bus.request(
            "coordinator", MessageKind.STREAM_REQUEST, {"sources": ["tab"]}, timeout=1.0
        )
        assert bus.pending_requests == 0
        return response

    response = asyncio.run(scenario())
    assert response.payload["stream_id"] == "granted"


def test_request_accepts_an_immediate_reply() -> None:
    bus = MessageBus()

    async def coordinator(message: Message) -> Message:
        return Message(
            MessageKind.STREAM_RESPONSE,
            {"request_id": message.request_id, "stream_id": "now"},
        )

    bus.register("coordinator", coordinator)
    response = asyncio.run(bus.request("coordinator", MessageKind.STREAM_REQUEST, timeout=1.0))
    assert response.payload["stream_id"] == "now"


def test_request_times_out_without_reply() -> None:
    bus = MessageBus()

    async def silent(message: Message) -> None:
        return None

    bus.register("coordinator", silent)
    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(bus.request("coordinator", MessageKind.STREAM_REQUEST, timeout=0.05))
    assert bus.pending_requests == 0


def _recording_bus() -> tuple[MessageBus, list[Message]]:
    bus = MessageBus()
    seen: list[Message] = []

    async def host(message: Message) -> Message:
        seen.append(message)
        return ack()

    bus.register("host", host)
    return bus, seen


def test_channel_queues_until_ready_then_flushes_in_order() -> None:
    bus, seen = _recording_bus()
    channel = ReadyGatedChannel(bus, "host")

    async def scenario() -> int:
        first = await channel.post(Message(MessageKind.RECORDER_START, {"n": 1}))
        second = await channel.post(Message(MessageKind.ACTION, {"n": 2}))
        assert first is None and second is None
        assert len(channel.queued) == 2
        delivered = await channel.mark_ready()
        response = await channel.post(Message(MessageKind.RECORDER_STOP, {"n": 3}))
        assert response is not None and response.payload["ok"] is True
        return delivered

    assert asyncio.run(scenario()) == 2
    assert [message.payload["n"] for message in seen] == [1, 2, 3]
    assert channel.queued == []


def test_channel_flush_stops_at_first_failure_and_keeps_order() -> None:
    bus = MessageBus()
    seen: list[int] = []
    failures = {"remaining": 1}

    async def host(message: Message) -> None:
        if message.payload["n"] == 2 and failures["remaining"]:
            failures["remaining"] -= 1
            raise RuntimeError("host reloading")
        seen.append(message.payload["n"])

    bus.register("host", host)
    channel = ReadyGatedChannel(bus, "host")

    async def scenario() -> None:
        for n in (1, 2, 3):
            await channel.post(Message(MessageKind.ACTION, {"n": n}))
        assert await channel.mark_ready() == 1
        assert channel.ready is False
        assert [message.payload["n"] for message in channel.queued] == [2, 3]
        # Posting while not ready never overtakes the queued messages.
        await channel.post(Message(MessageKind.ACTION, {"n": 4}))
        assert await channel.mark_ready() == 3

    asyncio.run(scenario())
    assert seen == [1, 2, 3, 4]


def test_channel_reports_flushed_responses() -> None:
    bus, _ = _recording_bus()
    flushed: list[tuple[MessageKind, bool]] = []

    async def on_flushed(message: Message, response: Message | None) -> None:
        flushed.append((message.kind, bool(response and response.payload["ok"])))

    channel = ReadyGatedChannel(bus, "host", on_flushed=on_flushed)

    async def scenario() -> None:
        await channel.post(Message(MessageKind.RECORDER_START))
        await channel.mark_ready()

    asyncio.run(scenario())
    assert flushed == [(MessageKind.RECORDER_START, True)]


def test_failed_direct_post_requeues_and_drops_readiness() -> None:
    bus = MessageBus()
    channel = ReadyGatedChannel(bus, "host")

    async def scenario() -> None:
        assert await channel.mark_ready() == 0
        assert await channel.post(Message(MessageKind.RECORDER_STOP)) is None

    asyncio.run(scenario())
    assert channel.ready is False
    assert [message.kind for message in channel.queued] == [MessageKind.RECORDER_STOP]
