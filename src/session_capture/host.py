"""Recorder host: sole owner of live capture resources."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping

from .bus import MessageBus
from .capture import CaptureStream, PreviewSurface, StreamProvider
from .chunker import VideoChunker
from .config import EncodingProfile, RecorderSettings
from .encoding import AvChunkEncoder, ChunkEncoder, select_profile
from .errors import (
    AcquisitionCancelled,
    CaptureUnavailable,
    ExportFailure,
    IllegalTransition,
    MessageDeliveryFailure,
    PersistenceFailure,
    SessionCaptureError,
    StreamEnded,
)
from .event_log import EventLog
from .export import ArchiveExporter, ExportResult
from .models import (
    IDLE_SESSION,
    ActionEvent,
    ScreenshotPhase,
    SelectedSource,
    SessionState,
    SessionStatus,
    advance,
    new_id,
    wall_time,
)
from .pending import PendingWrites
from .protocol import (
    COORDINATOR_CONTEXT,
    HOST_CONTEXT,
    Message,
    MessageKind,
    ack,
    status_message,
)
from .sampler import ScreenshotSampler
from .store import PersistentStore

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[RecorderSettings], ChunkEncoder]


def default_encoder_factory(settings: RecorderSettings) -> ChunkEncoder:
    return AvChunkEncoder(
        frame_rate=settings.frame_rate,
        max_width=settings.video_width,
        max_height=settings.video_height,
    )


@dataclass(slots=True)
class CaptureResources:
    """Live resources bound to one active session."""

    session_id: str
    stream: CaptureStream
    encoder: ChunkEncoder
    chunker: VideoChunker
    profile: EncodingProfile
    pump: asyncio.Task[None] | None = None
    closing: bool = field(default=False)
    frame_errors: int = 0


class RecorderHost:
    """Owns the stream, encoder and preview for at most one session at a time.

    The host is the source of truth for whether capture is running. Other
    contexts reach it only through the message bus and rebuild their view of
    the session from its status replies.
    """

    def __init__(
        self,
        bus: MessageBus,
        store: PersistentStore,
        provider: StreamProvider,
        *,
        settings: RecorderSettings | None = None,
        exporter: ArchiveExporter | None = None,
        event_log: EventLog | None = None,
        encoder_factory: EncoderFactory | None = None,
        name: str = HOST_CONTEXT,
        coordinator: str = COORDINATOR_CONTEXT,
        stream_request_timeout_s: float | None = None,
    ) -> None:
        self._bus = bus
        self._store = store
        self._provider = provider
        self._settings = settings if settings is not None else RecorderSettings()
        self._exporter = exporter
        self._event_log = event_log
        self._encoder_factory = encoder_factory or default_encoder_factory
        self._name = name
        self._coordinator = coordinator
        self._stream_request_timeout_s = stream_request_timeout_s
        self._state: SessionState = IDLE_SESSION
        self._resources: CaptureResources | None = None
        self._preview = PreviewSurface()
        self._pending = PendingWrites()
        self._sampler = ScreenshotSampler(
            store,
            self._preview,
            self.status,
            after_settle_ms=self._settings.after_settle_ms,
            jpeg_quality=self._settings.jpeg_quality,
        )
        self._acquire_lock = asyncio.Lock()
        self._stopping = False
        self._background: set[asyncio.Task[Any]] = set()
        self.last_export: ExportResult | None = None
        self.last_export_error: str | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def settings(self) -> RecorderSettings:
        return self._settings

    @property
    def preview(self) -> PreviewSurface:
        return self._preview

    @property
    def pending_writes(self) -> PendingWrites:
        return self._pending

    @property
    def resources(self) -> CaptureResources | None:
        return self._resources

    @property
    def sampler(self) -> ScreenshotSampler:
        return self._sampler

    def status(self) -> SessionState:
        return self._state

    # ------------------------------------------------------------------
    # Context lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Join the bus and announce readiness."""

        self._bus.register(self._name, self.handle)
        await self._announce_ready()

    async def shutdown(self) -> None:
        """Release everything and leave the bus, as if the context were destroyed."""

        self._bus.unregister(self._name)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._teardown()
        self._state = IDLE_SESSION
        self._preview.clear()
        self._stopping = False

    async def wait_idle(self) -> None:
        """Wait for autonomous finalisation and tracked writes to settle."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._pending.drain()

    # ------------------------------------------------------------------
    # Acquisition
    # ------------------------------------------------------------------
    async def acquire_and_start(
        self,
        source: SelectedSource,
        *,
        session_id: str | None = None,
        started_at: float | None = None,
    ) -> SessionState:
        """Tear down any previous capture, then start recording *source*."""

        if self._stopping or self._state.status is SessionStatus.STOPPING:
            raise IllegalTransition("A stop is still in progress")
        async with self._acquire_lock:
            await self._teardown()
            await self._close_superseded()
            if not self._provider.available():
                raise CaptureUnavailable("No capture API is available on this host")

            if not source.stream_id:
                stream_id = await self._request_stream(source)
                source = source.with_stream(stream_id)
            elif source.chosen_at is None:
                source = replace(source, chosen_at=wall_time())

            session_id = session_id or new_id()
            stream = await self._provider.open(source)
            try:
                encoder = self._encoder_factory(self._settings)
                profile = select_profile(encoder, self._settings.encoding_candidates)
            except SessionCaptureError:
                await stream.stop()
                raise

            chunker = VideoChunker(
                self._store,
                session_id,
                pending=self._pending,
                bitrate=self._settings.video_bitrate,
            )
            chunker.attach(encoder)
            encoder.start(profile, self._settings.timeslice_ms, bitrate=self._settings.video_bitrate)
            self._preview.clear()
            resources = CaptureResources(
                session_id=session_id,
                stream=stream,
                encoder=encoder,
                chunker=chunker,
                profile=profile,
            )
            stream.on_ended(self._on_stream_ended)
            self._resources = resources
            self._state = advance(
                self._state,
                SessionStatus.RECORDING,
                session_id=session_id,
                source=source,
                started_at=started_at if started_at is not None else wall_time(),
                ended_at=None,
                reason=None,
            )
            resources.pump = asyncio.create_task(
                self._pump(resources), name="session-capture-frame-pump"
            )

        state = self._state
        logger.info(
            "Recording session %s from %s using %s",
            session_id,
            source.type.value,
            profile.mime_type,
        )
        await self._persist_session(state)
        self._record(
            "capture",
            "recording-started",
            f"Recording started with {profile.mime_type}",
            metadata={"stream_id": source.stream_id, "codec": profile.codec},
        )
        await self._publish_status()
        await self._announce_ready()
        return state

    async def _request_stream(self, source: SelectedSource) -> str:
        payload: dict[str, Any] = {"sources": [source.type.value]}
        if source.tab_id is not None:
            payload["tab_id"] = source.tab_id
        try:
            response = await self._bus.request(
                self._coordinator,
                MessageKind.STREAM_REQUEST,
                payload,
                reply_to=self._name,
                timeout=self._stream_request_timeout_s,
            )
        except MessageDeliveryFailure as exc:
            raise CaptureUnavailable("No coordinator is available to choose a source") from exc
        except asyncio.TimeoutError as exc:
            raise AcquisitionCancelled("Source selection timed out") from exc
        stream_id = response.payload.get("stream_id")
        if isinstance(stream_id, str) and stream_id:
            return stream_id
        message = response.payload.get("message")
        detail = message if isinstance(message, str) and message else None
        if response.payload.get("error") == CaptureUnavailable.code:
            raise CaptureUnavailable(detail)
        raise AcquisitionCancelled(detail or "Source selection was declined")

    async def _close_superseded(self) -> None:
        state = self._state
        if state.status is SessionStatus.RECORDING or state.status is SessionStatus.PAUSED:
            stopping = advance(state, SessionStatus.STOPPING, reason="superseded")
            self._state = advance(stopping, SessionStatus.ENDED, ended_at=wall_time())
            await self._persist_session(self._state)

    # ------------------------------------------------------------------
    # Frame pump
    # ------------------------------------------------------------------
    async def _pump(self, resources: CaptureResources) -> None:
        interval = 1.0 / self._settings.frame_rate
        stream = resources.stream
        while not resources.closing and stream.active:
            try:
                frame = await stream.read_frame()
            except Exception as exc:  # pragma: no cover - source dependent
                if resources.closing or not stream.active:
                    break
                logger.error("Failed to read frame from %s: %s", stream.stream_id, exc)
                await asyncio.sleep(interval)
                continue
            stream_time = stream.stream_time()
            self._preview.update(frame, stream_time)
            if self._state.status is SessionStatus.RECORDING and not resources.closing:
                try:
                    await resources.encoder.write_frame(frame, stream_time)
                except asyncio.CancelledError:  # pragma: no cover
                    raise
                except Exception:
                    resources.frame_errors += 1
                    logger.exception(
                        "Encoder rejected a frame for session %s", resources.session_id
                    )
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------
    async def stop_and_finalize(self, reason: str | None = None) -> SessionState:
        """Stop capture, wait for every write, mark ended and export."""

        if self._stopping:
            return self._state
        state = self._state
        if state.status not in (SessionStatus.RECORDING, SessionStatus.PAUSED):
            return state
        self._stopping = True
        try:
            self._state = advance(state, SessionStatus.STOPPING, reason=reason)
            await self._publish_status()
            session_id = state.session_id
            await self._teardown()
            await self._pending.drain()
            self._state = advance(self._state, SessionStatus.ENDED, ended_at=wall_time())
            await self._persist_session(self._state)
            self._record(
                "session",
                "recording-ended",
                f"Recording ended ({reason or 'stopped'})",
            )
            if session_id is not None:
                self._sampler.forget(session_id)
                await self._export(session_id)
            await self._publish_status()
        finally:
            self._stopping = False
        return self._state

    async def _teardown(self) -> None:
        resources = self._resources
        if resources is None:
            return
        resources.closing = True
        if resources.pump is not None:
            await asyncio.gather(resources.pump, return_exceptions=True)
        await self._stop_encoder(resources)
        await resources.stream.stop()
        await resources.chunker.drain()
        resources.chunker.detach()
        if self._resources is resources:
            self._resources = None

    async def _stop_encoder(self, resources: CaptureResources) -> None:
        timeout = self._settings.finalize_flush_timeout_s
        try:
            if timeout is None:
                await resources.encoder.stop()
            else:
                await asyncio.wait_for(resources.encoder.stop(), timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Encoder did not flush within %.1fs for session %s",
                timeout,
                resources.session_id,
            )
            self._record(
                "capture",
                "flush-timeout",
                "Encoder flush timed out",
                metadata={"timeout_s": timeout},
            )
        except Exception as exc:  # pragma: no cover - encoder dependent
            logger.error("Encoder failed to stop for %s: %s", resources.session_id, exc)

    async def _export(self, session_id: str) -> None:
        if self._exporter is None:
            return
        self.last_export_error = None
        try:
            self.last_export = await self._exporter.export(session_id)
        except ExportFailure as exc:
            self.last_export_error = str(exc)
            logger.error("Export of session %s failed: %s", session_id, exc)
            self._record("export", "export-failed", str(exc))
            return
        self._record(
            "export",
            "export-complete",
            f"Archive written to {self.last_export.filename}",
            metadata=dict(self.last_export.counts),
        )

    def _on_stream_ended(self, stream: CaptureStream) -> None:
        resources = self._resources
        if resources is None or resources.stream is not stream or resources.closing:
            return
        if self._state.status not in (SessionStatus.RECORDING, SessionStatus.PAUSED):
            return
        logger.warning("Capture source %s ended externally", stream.stream_id)
        task = asyncio.get_running_loop().create_task(
            self._handle_source_ended(self._state.session_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _handle_source_ended(self, session_id: str | None) -> None:
        try:
            await self._bus.send(
                self._coordinator,
                Message(
                    MessageKind.STREAM_DEAD,
                    {"session_id": session_id, "reason": StreamEnded.code},
                ),
            )
        except MessageDeliveryFailure as exc:
            logger.debug("Coordinator missed stream-dead notice: %s", exc)
        await self.stop_and_finalize(StreamEnded.code)

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------
    async def pause(self) -> SessionState:
        if self._state.status is not SessionStatus.RECORDING:
            return self._state
        self._state = advance(self._state, SessionStatus.PAUSED)
        if self._resources is not None:
            self._resources.encoder.pause()
        await self._persist_session(self._state)
        await self._publish_status()
        return self._state

    async def resume(self) -> SessionState:
        if self._state.status is not SessionStatus.PAUSED:
            return self._state
        self._state = advance(self._state, SessionStatus.RECORDING)
        if self._resources is not None:
            self._resources.encoder.resume()
        await self._persist_session(self._state)
        await self._publish_status()
        return self._state

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def ingest_action(self, event: ActionEvent) -> bool:
        """Persist *event* and sample stills around it while recording."""

        state = self._state
        if state.status is not SessionStatus.RECORDING or state.session_id is None:
            return False
        action = event.with_session(state.session_id)
        self._pending.track(self._save_action(action))
        # Stills are reserved against the accepting state; a stop issued
        # right after still waits for them through the pending writes.
        for phase in (ScreenshotPhase.BEFORE, ScreenshotPhase.AFTER):
            session_id = self._sampler.claim(action, phase, state)
            if session_id is not None:
                self._pending.track(self._sampler.capture(action, phase, session_id))
        return True

    async def _save_action(self, action: ActionEvent) -> None:
        try:
            await self._store.save_action(action, created_at=wall_time())
        except PersistenceFailure as exc:
            logger.warning("Dropping action %s: %s", action.action_id, exc)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def handle(self, message: Message) -> Message | None:
        kind = message.kind
        payload = message.payload
        if kind is MessageKind.RECORDER_START:
            return await self._handle_start(payload)
        if kind is MessageKind.RECORDER_STOP:
            reason = payload.get("reason")
            state = await self.stop_and_finalize(reason if isinstance(reason, str) else None)
            export = self.last_export.to_dict() if self.last_export is not None else None
            return ack(session=state, export=export, export_error=self.last_export_error)
        if kind is MessageKind.RECORDER_PAUSE:
            return ack(session=await self.pause())
        if kind is MessageKind.RECORDER_RESUME:
            return ack(session=await self.resume())
        if kind is MessageKind.STATUS_REQUEST:
            return status_message(self._state)
        if kind is MessageKind.ACTION:
            try:
                event = ActionEvent.from_dict(payload)
            except (TypeError, ValueError) as exc:
                logger.debug("Ignoring malformed action: %s", exc)
                return None
            self.ingest_action(event)
            return None
        if kind is MessageKind.STREAM_RESPONSE:
            self._bus.resolve(message)
            return None
        logger.debug("Host ignoring %s", kind.value)
        return None

    async def _handle_start(self, payload: Mapping[str, Any]) -> Message:
        session_id = payload.get("session_id")
        current = self._state
        if (
            current.status is SessionStatus.RECORDING
            and current.session_id is not None
            and (session_id is None or session_id == current.session_id)
        ):
            return ack(session=current)
        if current.status is SessionStatus.PAUSED and session_id == current.session_id:
            return ack(session=await self.resume())
        source_payload = payload.get("source")
        try:
            source = (
                SelectedSource.from_dict(source_payload)
                if isinstance(source_payload, Mapping)
                else SelectedSource()
            )
        except (TypeError, ValueError) as exc:
            return ack(False, message=f"Invalid source: {exc}", error="invalid-source", session=current)
        started_at = payload.get("started_at")
        try:
            state = await self.acquire_and_start(
                source,
                session_id=session_id if isinstance(session_id, str) and session_id else None,
                started_at=float(started_at) if isinstance(started_at, (int, float)) else None,
            )
        except SessionCaptureError as exc:
            logger.warning("Capture could not start: %s", exc)
            self._record(
                "capture",
                "start-failed",
                str(exc),
                metadata={"error": exc.code},
            )
            return ack(False, message=str(exc), error=exc.code, session=self._state)
        return ack(session=state)

    async def _announce_ready(self) -> None:
        try:
            await self._bus.send(
                self._coordinator,
                Message(MessageKind.HOST_READY, {"host": self._name}),
            )
        except MessageDeliveryFailure as exc:
            logger.debug("Coordinator missed host-ready: %s", exc)

    async def _publish_status(self) -> None:
        try:
            await self._bus.send(self._coordinator, status_message(self._state))
        except MessageDeliveryFailure as exc:
            logger.debug("Coordinator missed status update: %s", exc)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    async def _persist_session(self, state: SessionState) -> bool:
        attempts = self._settings.session_write_attempts
        delay = self._settings.session_write_retry_delay_s
        for attempt in range(1, attempts + 1):
            try:
                await self._store.save_session(state)
                return True
            except PersistenceFailure as exc:
                if attempt >= attempts:
                    logger.error(
                        "Giving up persisting session %s after %d attempts: %s",
                        state.session_id,
                        attempts,
                        exc,
                    )
                    self._record("session", "persist-failed", str(exc))
                    return False
                logger.warning(
                    "Session write attempt %d/%d failed: %s", attempt, attempts, exc
                )
                await asyncio.sleep(delay)
        return False

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
            session_id=self._state.session_id,
            status=self._state.to_dict(),
            metadata=metadata,
        )


__all__ = [
    "CaptureResources",
    "EncoderFactory",
    "RecorderHost",
    "default_encoder_factory",
]
