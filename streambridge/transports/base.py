"""Base transport interface for StreamBridge.

Transports handle the raw I/O connection lifecycle of one WebSocket. They
are responsible for connecting, sending, receiving, and disconnecting.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from loguru import logger

from streambridge.core.errors import BackpressureExceededError


class BaseTransport(ABC):
    """Abstract base class for transport connections.

    One transport faces the telephony gateway, the other the realtime API.
    """

    @abstractmethod
    async def connect(self, **kwargs) -> None:
        """Establish the transport connection."""
        ...

    @abstractmethod
    async def send(self, data: bytes | str) -> None:
        """Send data over the transport."""
        ...

    @abstractmethod
    async def recv(self) -> bytes | str:
        """Receive the next message from the transport.

        Raises:
            ConnectionClosed: If the connection is closed.
        """
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the transport connection gracefully."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently connected."""
        ...


_CLOSE = object()


class BoundedSender:
    """Single-writer outbox for one transport.

    Frames are queued without blocking the caller and written in order by
    :meth:`run`. The queue is bounded: when a slow peer lets it fill up,
    :meth:`put` raises BackpressureExceededError instead of growing memory.
    """

    def __init__(self, transport: BaseTransport, side: str, maxsize: int = 256) -> None:
        self.transport = transport
        self.side = side
        self.maxsize = maxsize
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.sent = 0

    def put(self, data: bytes | str) -> None:
        if self._closed:
            logger.debug(f"Dropping {self.side} frame: outbox closed")
            return
        try:
            self._queue.put_nowait(data)
        except asyncio.QueueFull:
            raise BackpressureExceededError(self.side, self.maxsize) from None

    async def run(self) -> None:
        """Write queued frames until :meth:`close` is called."""
        while True:
            data = await self._queue.get()
            if data is _CLOSE:
                return
            await self.transport.send(data)
            self.sent += 1

    def close(self) -> None:
        """Stop accepting frames; :meth:`run` returns after draining what is queued."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            self.discard()
            self._queue.put_nowait(_CLOSE)

    def discard(self) -> int:
        """Drop every queued frame. Returns the number dropped."""
        dropped = 0
        while not self._queue.empty():
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _CLOSE:
                dropped += 1
        return dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()
