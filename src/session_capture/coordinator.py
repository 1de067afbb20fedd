"""Session coordinator: lifecycle projection and command routing."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from .bus import MessageBus, ReadyGatedChannel
from .capture import SourceSelector
from .errors import (
    AcquisitionCancelled,
    CaptureUnavailable,
    MessageDeliveryFailure,
    SessionCaptureError,
)
from .event_log import EventLog
from .models import (
    IDLE_SESSION,
    ActionEvent,
    SelectedSource,
    SessionState,
    SessionStatus,
    advance,
    can_transition,
    new_id,
    wall_time,
)
from .protocol import (
    COORDINATOR_CONTEXT,
    HOST_CONTEXT,
    Message,
    MessageKind,
    ack,
    session_from,
    status_message,
)

logger = logging.getLogger(__name__)

# Errors meaning the user never got as far as granting a source.
_RETURN_TO_IDLE: frozenset[str] = frozenset(
    {AcquisitionCancelled.code, CaptureUnavailable.code}
)


class SessionCoordinator:
    """Routes session commands to the recorder host and broadcasts status.

    Only a projection of the session is held here. It can be rebuilt at any
    time with :meth:`refresh`, which asks the host for the authoritative state.
    """

    def __init__(
        self,
        bus: MessageBus,
        selector: SourceSelector,
        *,
        event_log: EventLog | None = None,
        name: str = COORDINATOR_CONTEXT,
        host: str = HOST_CONTEXT,
    ) -> None:
        self._bus = bus
        self._selector = selector
        self._event_log = event_log
        self._name = name
        self._host = host
        self._projection: SessionState = IDLE_SESSION
        self._channel = ReadyGatedChannel(bus, host, on_flushed=self._on_flushed)
        self._lock = asyncio.Lock()
        self.last_export: dict[str, Any] | None = None
        self.last_error: str | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def channel(self) -> ReadyGatedChannel:
        return self._channel

    def status(self) -> SessionState:
        return self._projection

    # ------------------------------------------------------------------
    # Context lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> SessionState:
        """Join the bus and rebuild the projection from the host."""

        self._bus.register(self._name, self.handle)
        return await self.refresh()

    def disconnect(self) -> None:
        self._bus.unregister(self._name)

    async def refresh(self) -> SessionState:
        try:
            response = await self._bus.send(self._host, Message(MessageKind.STATUS_REQUEST))
        except MessageDeliveryFailure as exc:
            logger.info("Recorder host unreachable, assuming idle: %s", exc)
            self._channel.mark_unready()
            await self._adopt(IDLE_SESSION)
            return self._projection
        await self._adopt(session_from(response) or IDLE_SESSION)
        await self._channel.mark_ready()
        return self._projection

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def start(self, source: SelectedSource | None = None) -> SessionState:
        """Begin recording, or return the running session unchanged."""

        if self._is_recording():
            return self._projection
        async with self._lock:
            if self._is_recording():
                return self._projection
            current = self._projection
            if current.status is SessionStatus.STOPPING:
                logger.info("Start ignored while session %s is stopping", current.session_id)
                return current
            source = source if source is not None else SelectedSource()
            resuming = (
                current.status in (SessionStatus.PAUSED, SessionStatus.CONSENTING)
                and current.session_id is not None
            )
            session_id = current.session_id if resuming else new_id()
            started_at = (
                current.started_at
                if resuming and current.started_at is not None
                else wall_time()
            )
            if current.status is SessionStatus.PAUSED:
                source = current.source or source
                await self._set(advance(current, SessionStatus.RECORDING))
            else:
                target = SessionStatus.RECORDING if source.stream_id else SessionStatus.CONSENTING
                if current.status is not target:
                    await self._set(
                        advance(
                            current,
                            target,
                            session_id=session_id,
                            source=source,
                            started_at=started_at,
                            ended_at=None,
                            reason=None,
                        )
                    )
            self.last_error = None
            self._record("session", "start-requested", "Start requested")
            payload = {
                "session_id": session_id,
                "source": source.to_dict(),
                "started_at": started_at,
            }
            response = await self._channel.post(Message(MessageKind.RECORDER_START, payload))
            if response is not None:
                await self._apply_start_ack(response)
            return self._projection

    async def stop(self, reason: str | None = None) -> SessionState:
        """Finalise the current session; a no-op when none is assigned."""

        current = self._projection
        if current.session_id is None:
            return current
        if current.status in (SessionStatus.IDLE, SessionStatus.ENDED, SessionStatus.STOPPING):
            return current
        async with self._lock:
            current = self._projection
            if current.status is SessionStatus.CONSENTING:
                dropped = self._channel.discard(
                    lambda queued: queued.kind is MessageKind.RECORDER_START
                    and queued.payload.get("session_id") == current.session_id
                )
                if dropped:
                    logger.info("Cancelled queued start for session %s", current.session_id)
                await self._set(
                    advance(current, SessionStatus.ENDED, ended_at=wall_time(), reason=reason)
                )
                return self._projection
            if current.status not in (SessionStatus.RECORDING, SessionStatus.PAUSED):
                return current
            await self._set(advance(current, SessionStatus.STOPPING, reason=reason))
            response = await self._channel.post(
                Message(
                    MessageKind.RECORDER_STOP,
                    {"session_id": current.session_id, "reason": reason},
                )
            )
            if response is not None:
                await self._apply_stop_ack(response)
            return self._projection

    async def pause(self) -> SessionState:
        if self._projection.status is not SessionStatus.RECORDING:
            return self._projection
        response = await self._channel.post(Message(MessageKind.RECORDER_PAUSE))
        await self._adopt(session_from(response))
        return self._projection

    async def resume(self) -> SessionState:
        if self._projection.status is not SessionStatus.PAUSED:
            return self._projection
        response = await self._channel.post(Message(MessageKind.RECORDER_RESUME))
        await self._adopt(session_from(response))
        return self._projection

    async def ingest_action(self, event: ActionEvent) -> bool:
        """Forward *event* to the host while recording; otherwise drop it."""

        if not self._is_recording():
            logger.debug("Dropping action %s while %s", event.action_id, self._projection.status.value)
            return False
        await self._channel.post(Message(MessageKind.ACTION, event.to_dict()))
        return True

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def handle(self, message: Message) -> Message | None:
        kind = message.kind
        payload = message.payload
        if kind is MessageKind.START:
            source_payload = payload.get("source", payload)
            try:
                source = (
                    SelectedSource.from_dict(source_payload)
                    if isinstance(source_payload, Mapping) and source_payload
                    else None
                )
            except (TypeError, ValueError) as exc:
                return ack(False, message=f"Invalid source: {exc}", session=self._projection)
            return ack(session=await self.start(source), error=self.last_error)
        if kind is MessageKind.STOP:
            reason = payload.get("reason")
            state = await self.stop(reason if isinstance(reason, str) else None)
            return ack(session=state, export=self.last_export, export_error=self.last_error)
        if kind is MessageKind.PAUSE:
            return ack(session=await self.pause())
        if kind is MessageKind.STATUS_REQUEST:
            return status_message(self._projection)
        if kind is MessageKind.ACTION:
            try:
                event = ActionEvent.from_dict(payload)
            except (TypeError, ValueError) as exc:
                logger.debug("Ignoring malformed action: %s", exc)
                return None
            await self.ingest_action(event)
            return None
        if kind is MessageKind.STATUS:
            await self._adopt(session_from(message))
            return None
        if kind is MessageKind.HOST_READY:
            await self._channel.mark_ready()
            return None
        if kind is MessageKind.STREAM_REQUEST:
            return await self._serve_stream_request(message)
        if kind is MessageKind.STREAM_DEAD:
            logger.warning("Recorder host lost its capture source")
            self._record(
                "capture",
                "stream-dead",
                "Capture source ended externally",
                metadata={"reason": payload.get("reason")},
            )
            return None
        logger.debug("Coordinator ignoring %s", kind.value)
        return None

    async def _serve_stream_request(self, message: Message) -> Message | None:
        raw_sources = message.payload.get("sources")
        sources = [str(item) for item in raw_sources] if isinstance(raw_sources, list) else []
        body: dict[str, Any]
        try:
            stream_id = await self._selector.choose(sources or ["tab"])
            body = {"stream_id": stream_id}
        except SessionCaptureError as exc:
            logger.info("Source selection failed: %s", exc)
            body = {"error": exc.code, "message": str(exc)}
        body["request_id"] = message.request_id
        response = Message(MessageKind.STREAM_RESPONSE, body)
        reply_to = message.payload.get("reply_to")
        if not isinstance(reply_to, str) or not reply_to:
            return response
        try:
            await self._bus.send(reply_to, response)
        except MessageDeliveryFailure as exc:
            logger.warning("Could not deliver stream response to %s: %s", reply_to, exc)
        return None

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------
    def _is_recording(self) -> bool:
        return (
            self._projection.status is SessionStatus.RECORDING
            and self._projection.session_id is not None
        )

    async def _apply_start_ack(self, response: Message) -> None:
        if response.payload.get("ok"):
            state = session_from(response)
            current = self._projection
            if (
                state is not None
                and state.session_id == current.session_id
                and current.status in (SessionStatus.STOPPING, SessionStatus.ENDED)
            ):
                # A stop overtook this start; ended sessions stay ended.
                if current.status is SessionStatus.ENDED:
                    await self._stop_late_start(current)
                return
            await self._adopt(state)
            return
        error = response.payload.get("error")
        code = error if isinstance(error, str) and error else "start-failed"
        self.last_error = code
        current = self._projection
        if current.status is SessionStatus.CONSENTING and code in _RETURN_TO_IDLE:
            await self._set(
                advance(
                    current,
                    SessionStatus.IDLE,
                    session_id=None,
                    source=None,
                    started_at=None,
                    reason=code,
                )
            )
        elif current.status in (SessionStatus.CONSENTING, SessionStatus.RECORDING):
            await self._set(
                advance(current, SessionStatus.ENDED, ended_at=wall_time(), reason=code)
            )

    async def _stop_late_start(self, cancelled: SessionState) -> None:
        logger.info(
            "Session %s was cancelled before capture started, stopping the recorder",
            cancelled.session_id,
        )
        self._record("session", "late-start-stopped", "Stopping capture for a cancelled session")
        response = await self._channel.post(
            Message(
                MessageKind.RECORDER_STOP,
                {"session_id": cancelled.session_id, "reason": cancelled.reason},
            )
        )
        if response is not None:
            await self._apply_stop_ack(response)

    async def _apply_stop_ack(self, response: Message) -> None:
        export = response.payload.get("export")
        self.last_export = dict(export) if isinstance(export, Mapping) else None
        export_error = response.payload.get("export_error")
        self.last_error = export_error if isinstance(export_error, str) else None
        if self._projection.status is SessionStatus.ENDED:
            return
        state = session_from(response)
        if state is not None and state.status is SessionStatus.ENDED:
            await self._adopt(state)
            return
        if state is not None and state.status is SessionStatus.STOPPING:
            return
        # The host had no live session left to finalise.
        if self._projection.status is SessionStatus.STOPPING:
            await self._set(
                advance(self._projection, SessionStatus.ENDED, ended_at=wall_time())
            )

    async def _on_flushed(self, message: Message, response: Message | None) -> None:
        if response is None:
            return
        if message.kind is MessageKind.RECORDER_START:
            await self._apply_start_ack(response)
        elif message.kind is MessageKind.RECORDER_STOP:
            await self._apply_stop_ack(response)
        elif message.kind in (MessageKind.RECORDER_PAUSE, MessageKind.RECORDER_RESUME):
            await self._adopt(session_from(response))

    async def _adopt(self, state: SessionState | None) -> None:
        """Take the host's view of the session as the new projection."""

        if state is None or state == self._projection:
            return
        current = self._projection
        if current.session_id is not None and state.session_id == current.session_id:
            if current.status is SessionStatus.ENDED:
                return
            if current.status is SessionStatus.STOPPING and state.status in (
                SessionStatus.RECORDING,
                SessionStatus.PAUSED,
            ):
                logger.debug(
                    "Stop pending for %s, ignoring host %s",
                    state.session_id,
                    state.status.value,
                )
                return
        if state.status is not self._projection.status and not can_transition(
            self._projection.status, state.status
        ):
            logger.debug(
                "Adopting host status %s over projected %s",
                state.status.value,
                self._projection.status.value,
            )
        await self._set(state)

    async def _set(self, state: SessionState) -> None:
        previous = self._projection
        self._projection = state
        if previous.status is not state.status:
            self._record(
                "session",
                f"status-{state.status.value}",
                f"Session {previous.status.value} -> {state.status.value}",
            )
        await self._bus.broadcast(status_message(state))

    def _record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        metadata: Mapping[str, object | None] | None = None,
    ) -> None:
        if self._event_log is None:
            return
        self._event_log.record(
            category,
            event,
            message,
            session_id=self._projection.session_id,
            status=self._projection.to_dict(),
            metadata=metadata,
        )


__all__ = ["SessionCoordinator"]
