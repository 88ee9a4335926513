"""Streaming registry: one-way pushes to every client watching a resource.

Learn: A driver-location SSE stream, an order status stream and an upload
progress stream all look the same from here: a resource id and a set of
open channel handles. push() fans a frame out to all of them.

Rules:
1. The caller authorizes BEFORE open(). The registry trusts its caller.
2. A handle whose send fails is dropped on the spot. No retry, no error
   surfaced to the producer or to the other subscribers.
3. Pushes for one resource are serialized by a per-key lock, so frames
   arrive in the order push() was called on this process.
4. A heartbeat task pings every handle on a fixed interval. That keeps
   proxies from cutting idle streams and finds dead handles between pushes.
5. When the last handle for a resource goes, the entry goes too.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import structlog

from orderpulse.realtime.channels import ChannelHandle
from orderpulse.realtime.events import heartbeat_frame, utc_now
from orderpulse.realtime.locks import KeyedLock

logger = structlog.get_logger()


@dataclass
class StreamSubscription:
    resource_id: str
    channel: ChannelHandle
    subscriber: str
    joined_at: datetime = field(default_factory=utc_now)


class StreamingRegistry:
    """Process-local map of resource id → open stream subscriptions."""

    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self._streams: dict[str, dict[str, StreamSubscription]] = {}
        self._locks = KeyedLock()
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ─── Membership ──────────────────────────────────────

    async def open(self, resource_id: str, channel: ChannelHandle) -> StreamSubscription:
        async with self._locks.hold(resource_id):
            subscription = StreamSubscription(
                resource_id=resource_id,
                channel=channel,
                subscriber=channel.identity,
            )
            self._streams.setdefault(resource_id, {})[channel.id] = subscription
        logger.info(
            "stream.opened",
            resource_id=resource_id,
            channel_id=channel.id,
            subscriber=channel.identity,
        )
        return subscription

    async def close(self, resource_id: str, channel: ChannelHandle) -> None:
        """Deregister a handle. Closing twice is a no-op."""
        async with self._locks.hold(resource_id):
            removed = self._discard(resource_id, channel.id)
        if removed:
            logger.info("stream.closed", resource_id=resource_id, channel_id=channel.id)

    @asynccontextmanager
    async def subscription(
        self, resource_id: str, channel: ChannelHandle
    ) -> AsyncIterator[StreamSubscription]:
        """Registration scoped to a block; the handle is closed on exit."""
        sub = await self.open(resource_id, channel)
        try:
            yield sub
        finally:
            await self.close(resource_id, channel)
            await channel.close()

    def _discard(self, resource_id: str, channel_id: str) -> bool:
        subs = self._streams.get(resource_id)
        if not subs or channel_id not in subs:
            return False
        del subs[channel_id]
        if not subs:
            del self._streams[resource_id]
        return True

    # ─── Delivery ────────────────────────────────────────

    async def push(self, resource_id: str, frame: dict[str, Any]) -> int:
        """Send a frame to every handle for resource_id.

        Returns the number of handles that accepted it.
        """
        async with self._locks.hold(resource_id):
            subs = list(self._streams.get(resource_id, {}).values())
            if not subs:
                return 0
            results = await asyncio.gather(
                *(s.channel.send(frame) for s in subs),
                return_exceptions=True,
            )
            delivered = 0
            failed = []
            for sub, result in zip(subs, results):
                if isinstance(result, Exception):
                    self._discard(resource_id, sub.channel.id)
                    failed.append(sub.channel)
                    logger.info(
                        "stream.dropped",
                        resource_id=resource_id,
                        channel_id=sub.channel.id,
                        error=str(result),
                    )
                else:
                    delivered += 1

        # Closing ends the stream's drain loop, which then deregisters itself.
        for channel in failed:
            await channel.close()
        return delivered

    async def heartbeat(self) -> int:
        """One heartbeat sweep over every open handle. Returns handles dropped."""
        before = self.count()
        frame = heartbeat_frame()
        for resource_id in list(self._streams):
            await self.push(resource_id, frame)
        return before - self.count()

    # ─── Introspection ───────────────────────────────────

    def count(self, resource_id: Optional[str] = None) -> int:
        if resource_id is not None:
            return len(self._streams.get(resource_id, {}))
        return sum(len(s) for s in self._streams.values())

    def resources(self) -> list[str]:
        return list(self._streams)

    # ─── Heartbeat task ──────────────────────────────────

    def start(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                dropped = await self.heartbeat()
                if dropped:
                    logger.info("stream.heartbeat_dropped", dropped=dropped)
            except Exception:
                logger.exception("stream.heartbeat_failed")
