from __future__ import annotations

"""Bounded event channels and cancel tokens for listener tasks."""

import asyncio
import logging
from typing import Any

from nibble import config

logger = logging.getLogger(__name__)


class _Closed:
    def __repr__(self) -> str:
        return "<closed>"


CLOSED = _Closed()


class CancelToken:
    """Workflow-scoped cancellation flag that listener loops poll at every suspension point."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for `seconds`; returns False as soon as the token is cancelled."""
        if self._event.is_set():
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False


class EventChannel:
    """Bounded queue that drops the oldest pending event when full."""

    def __init__(self, maxsize: int = config.LISTENER_CHANNEL_SIZE) -> None:
        if maxsize <= 0:
            raise ValueError("Channel size must be positive")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.sent = 0
        self.closed = False

    def _push(self, item: Any) -> None:
        while self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def send(self, event: Any) -> None:
        if self.closed:
            raise RuntimeError("Channel is closed")
        if self._queue.full():
            logger.warning("Listener channel full; dropping oldest event")
        self._push(event)
        self.sent += 1

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._push(CLOSED)

    async def receive(self) -> Any:
        """Next event, or CLOSED once the producer has finished."""
        return await self._queue.get()

    def __len__(self) -> int:
        return self._queue.qsize()
