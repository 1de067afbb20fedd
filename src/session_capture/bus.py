"""At-most-once message delivery between independently-lifecycled contexts."""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Mapping

from .errors import MessageDeliveryFailure
from .protocol import Message, MessageKind

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Awaitable["Message | None"]]
ResponseHandler = Callable[[Message, "Message | None"], Awaitable[None]]

ROLE_CONTEXT = "context"
ROLE_SURFACE = "surface"


@dataclass(slots=True)
class _Endpoint:
    name: str
    handler: Handler
    role: str


class MessageBus:
    """Routes messages to named contexts and broadcasts to presentation surfaces.

    Delivery is a single attempt: ``send`` either hands the message to the
    target's handler or raises :class:`MessageDeliveryFailure`. Nothing is
    acknowledged implicitly and nothing is retried here.
    """

    def __init__(self) -> None:
        self._endpoints: dict[str, _Endpoint] = {}
        self._pending: dict[str, asyncio.Future[Message]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(self, name: str, handler: Handler, *, role: str = ROLE_CONTEXT) -> None:
        if role not in (ROLE_CONTEXT, ROLE_SURFACE):
            raise ValueError(f"Unknown endpoint role {role!r}")
        self._endpoints[name] = _Endpoint(name=name, handler=handler, role=role)

    def unregister(self, name: str) -> None:
        self._endpoints.pop(name, None)

    def is_registered(self, name: str) -> bool:
        return name in self._endpoints

    @property
    def surfaces(self) -> list[str]:
        return [name for name, item in self._endpoints.items() if item.role == ROLE_SURFACE]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    async def send(self, target: str, message: Message) -> Message | None:
        endpoint = self._endpoints.get(target)
        if endpoint is None:
            raise MessageDeliveryFailure(f"No context named {target!r} is listening")
        try:
            return await endpoint.handler(message)
        except asyncio.CancelledError:
            raise
        except MessageDeliveryFailure:
            raise
        except Exception as exc:
            raise MessageDeliveryFailure(
                f"{target} failed to handle {message.kind.value}: {exc}"
            ) from exc

    async def broadcast(self, message: Message) -> int:
        """Deliver *message* to every surface; return how many accepted it."""

        delivered = 0
        for name in self.surfaces:
            endpoint = self._endpoints.get(name)
            if endpoint is None:
                continue
            try:
                await endpoint.handler(message)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug("Broadcast of %s to %s failed: %s", message.kind.value, name, exc)
                continue
            delivered += 1
        return delivered

    async def request(
        self,
        target: str,
        kind: MessageKind,
        payload: Mapping[str, Any] | None = None,
        *,
        reply_to: str | None = None,
        timeout: float | None = None,
    ) -> Message:
        """Send a request carrying a fresh ``request_id`` and await its response.

        The response may be returned directly by the target's handler or sent
        later and handed to :meth:`resolve`; only a response echoing the same
        ``request_id`` completes this call.
        """

        request_id = uuid.uuid4().hex
        future: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        body = dict(payload or {})
        body["request_id"] = request_id
        if reply_to is not None:
            body["reply_to"] = reply_to
        try:
            immediate = await self.send(target, Message(kind, body))
            if immediate is not None and immediate.request_id == request_id:
                self.resolve(immediate)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, message: Message) -> bool:
        """Complete the pending request matching ``message.request_id``."""

        request_id = message.request_id
        if request_id is None:
            return False
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(message)
        return True

    @property
    def pending_requests(self) -> int:
        return len(self._pending)


class ReadyGatedChannel:
    """FIFO sender that holds messages until the target signals readiness."""

    def __init__(
        self,
        bus: MessageBus,
        target: str,
        *,
        on_flushed: ResponseHandler | None = None,
    ) -> None:
        self._bus = bus
        self._target = target
        self._on_flushed = on_flushed
        self._queue: Deque[Message] = deque()
        self._ready = False
        self._flushing = False

    @property
    def target(self) -> str:
        return self._target

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def queued(self) -> list[Message]:
        return list(self._queue)

    def mark_unready(self) -> None:
        self._ready = False

    def discard(self, predicate: Callable[[Message], bool]) -> list[Message]:
        """Drop queued messages matching *predicate*, keeping the rest in order."""

        dropped = [message for message in self._queue if predicate(message)]
        if dropped:
            self._queue = deque(message for message in self._queue if not predicate(message))
        return dropped

    async def mark_ready(self) -> int:
        self._ready = True
        return await self.flush()

    async def post(self, message: Message) -> Message | None:
        """Deliver now when ready, otherwise queue behind earlier messages."""

        if not self._ready or self._flushing or self._queue:
            self._queue.append(message)
            return None
        try:
            return await self._bus.send(self._target, message)
        except MessageDeliveryFailure as exc:
            logger.warning(
                "Delivery of %s to %s failed, holding until ready: %s",
                message.kind.value,
                self._target,
                exc,
            )
            self._ready = False
            self._queue.append(message)
            return None

    async def flush(self) -> int:
        if self._flushing or not self._ready:
            return 0
        self._flushing = True
        delivered = 0
        try:
            while self._queue:
                message = self._queue.popleft()
                try:
                    response = await self._bus.send(self._target, message)
                except MessageDeliveryFailure as exc:
                    logger.warning(
                        "Flush to %s stopped at %s: %s", self._target, message.kind.value, exc
                    )
                    self._queue.appendleft(message)
                    self._ready = False
                    break
                delivered += 1
                if self._on_flushed is not None:
                    await self._on_flushed(message, response)
        finally:
            self._flushing = False
        return delivered


__all__ = [
    "Handler",
    "MessageBus",
    "ROLE_CONTEXT",
    "ROLE_SURFACE",
    "ReadyGatedChannel",
    "ResponseHandler",
]
