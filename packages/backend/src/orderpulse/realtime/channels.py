"""Channel handles — one per open client connection.

Learn: Registries never talk to Starlette directly. They hold ChannelHandles,
which know exactly two things: how to send a frame, and whether the
connection is gone. That keeps the registries transport-agnostic and lets
tests use in-memory channels.

Two transports:
- SSEChannel: one-way. Frames go into a bounded queue that the SSE
  response generator drains. A full queue means a slow consumer: the send
  fails and the registry drops the handle.
- WebSocketChannel: bidirectional. Sends go straight to the socket with a
  timeout; any failure becomes a TransportError.
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from starlette.websockets import WebSocket, WebSocketState

from orderpulse.realtime.errors import TransportError
from orderpulse.realtime.events import utc_now


class ChannelHandle(ABC):
    """Abstract base for a single client connection."""

    def __init__(
        self,
        identity: str,
        role: Optional[str] = None,
        handle_id: Optional[str] = None,
    ):
        self.id = handle_id or uuid.uuid4().hex
        self.identity = identity
        self.role = role
        self.opened_at: datetime = utc_now()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.id[:8]} identity={self.identity}>"

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the connection can no longer receive frames."""

    @abstractmethod
    async def send(self, frame: dict[str, Any]) -> None:
        """Deliver one frame.

        Raises:
            TransportError: if the frame could not be delivered
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop accepting frames. Idempotent."""


# ═══════════════════════════════════════════════════════════
# Server-Sent Events
# ═══════════════════════════════════════════════════════════

_CLOSE = object()


class SSEChannel(ChannelHandle):
    """Queue-backed handle drained by an EventSourceResponse generator."""

    def __init__(
        self,
        identity: str,
        role: Optional[str] = None,
        queue_size: int = 100,
        handle_id: Optional[str] = None,
    ):
        super().__init__(identity, role, handle_id)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def send(self, frame: dict[str, Any]) -> None:
        if self._closed:
            raise TransportError(f"SSE channel {self.id} is closed")
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise TransportError(
                f"SSE channel {self.id} is not keeping up "
                f"({self._queue.maxsize} frames pending)"
            )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wake the drain loop even if the queue is full.
        while True:
            try:
                self._queue.put_nowait(_CLOSE)
                break
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def frames(self) -> AsyncIterator[dict[str, Any]]:
        """Yield frames in order until the channel is closed."""
        while True:
            frame = await self._queue.get()
            if frame is _CLOSE:
                return
            yield frame

    @staticmethod
    def encode(frame: dict[str, Any]) -> dict[str, str]:
        """Frame → sse-starlette event dict (`data: {...}`)."""
        return {"data": json.dumps(frame, default=str)}


# ═══════════════════════════════════════════════════════════
# WebSocket
# ═══════════════════════════════════════════════════════════


class WebSocketChannel(ChannelHandle):
    """Handle around an accepted Starlette WebSocket."""

    def __init__(
        self,
        websocket: WebSocket,
        identity: str,
        role: Optional[str] = None,
        send_timeout: float = 5.0,
        handle_id: Optional[str] = None,
    ):
        super().__init__(identity, role, handle_id)
        self.websocket = websocket
        self.send_timeout = send_timeout
        self._failed = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return (
            self._failed
            or self._closed
            or self.websocket.client_state != WebSocketState.CONNECTED
        )

    async def send(self, frame: dict[str, Any]) -> None:
        if self.closed:
            raise TransportError(f"WebSocket channel {self.id} is closed")
        try:
            await asyncio.wait_for(
                self.websocket.send_text(json.dumps(frame, default=str)),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            self._failed = True
            raise TransportError(f"WebSocket channel {self.id} send timed out")
        except Exception as e:
            self._failed = True
            raise TransportError(f"WebSocket channel {self.id} send failed: {e}") from e

    async def close(self) -> None:
        """Close the socket. A failed send doesn't count as closed: the
        client may still be attached and has to be told to go away."""
        if self._closed:
            return
        self._closed = True
        if self.websocket.client_state == WebSocketState.CONNECTED:
            try:
                await self.websocket.close()
            except (RuntimeError, OSError):
                # Already closing from the client side.
                pass
