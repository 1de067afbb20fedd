"""Tracking of in-flight persistence work."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

logger = logging.getLogger(__name__)


def _report_failure(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Pending write failed: %s", exc, exc_info=exc)


class PendingWrites:
    """Set of write tasks the finalise path must see drained."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Future[Any]] = set()
        self._issued = 0

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def issued(self) -> int:
        return self._issued

    def track(self, awaitable: Awaitable[Any]) -> asyncio.Future[Any]:
        task = asyncio.ensure_future(awaitable)
        self._issued += 1
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_report_failure)
        return task

    async def drain(self) -> None:
        """Wait until every tracked write, including ones added meanwhile, settles."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


__all__ = ["PendingWrites"]
