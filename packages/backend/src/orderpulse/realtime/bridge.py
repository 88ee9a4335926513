"""Broker bridge: publish on one process, dispatch on every other.

Learn: Streaming and room registries are process-local. A customer whose
WebSocket lives on process B would never hear about an order that process
A updated, unless A also publishes the event and B re-dispatches it into
its own registries. That's all this module does.

Envelope on the wire:

    {"origin": "<process id>", "event": {...}}

The producing process already delivered locally, so every bridge skips
envelopes carrying its own origin. Each other process dispatches the
event exactly once per broker message. Handlers re-send the same frames,
so a duplicate from the broker is harmless.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import structlog

from orderpulse.realtime.errors import BrokerUnavailableError
from orderpulse.realtime.events import utc_now
from orderpulse.realtime.pubsub import Broker, BrokerSubscription

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass
class ChannelSubscriptionRecord:
    channel: str
    handler: Handler
    registered_at: datetime = field(default_factory=utc_now)


class BrokerBridge:
    def __init__(
        self,
        broker: Broker,
        process_id: Optional[str] = None,
        reconnect_delay: float = 1.0,
    ):
        self.broker = broker
        self.process_id = process_id or uuid.uuid4().hex
        self.reconnect_delay = reconnect_delay
        self._records: dict[str, ChannelSubscriptionRecord] = {}
        self._subscription: Optional[BrokerSubscription] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def channels(self) -> list[str]:
        return sorted(self._records)

    def record(self, channel: str) -> Optional[ChannelSubscriptionRecord]:
        return self._records.get(channel)

    # ─── Publish ─────────────────────────────────────────

    async def publish(self, channel: str, event: dict[str, Any]) -> int:
        """Hand an event to the broker.

        Raises:
            BrokerUnavailableError: the broker rejected the publish
        """
        payload = json.dumps({"origin": self.process_id, "event": event}, default=str)
        try:
            return await self.broker.publish(channel, payload)
        except BrokerUnavailableError:
            logger.warning("bridge.publish_failed", channel=channel)
            raise

    # ─── Subscribe ───────────────────────────────────────

    async def subscribe(self, channel: str, handler: Handler) -> ChannelSubscriptionRecord:
        """Register the local handler for a channel.

        One record per channel; registering again replaces the handler.
        If the listener is already running it resubscribes so the new
        channel is live when this returns.
        """
        is_new = channel not in self._records
        record = ChannelSubscriptionRecord(channel=channel, handler=handler)
        self._records[channel] = record
        if is_new and self.running:
            await self.stop()
            await self.start()
        logger.info("bridge.subscribed", channel=channel, process_id=self.process_id)
        return record

    async def start(self) -> None:
        """Open the broker subscription and start the listener task."""
        if self.running or not self._records:
            return
        try:
            self._subscription = await self.broker.subscribe(self.channels())
        except BrokerUnavailableError as e:
            # The listener keeps retrying until the broker comes back.
            logger.warning("bridge.start_degraded", error=str(e))
        self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_subscription()

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.close()

    # ─── Listener ────────────────────────────────────────

    async def _listen(self) -> None:
        while True:
            try:
                if self._subscription is None:
                    self._subscription = await self.broker.subscribe(self.channels())
                    logger.info("bridge.resubscribed", channels=self.channels())
                async for channel, raw in self._subscription.messages():
                    await self.dispatch(channel, raw)
                return
            except BrokerUnavailableError as e:
                logger.warning("bridge.subscription_lost", error=str(e))
                await self._close_subscription()
                await asyncio.sleep(self.reconnect_delay)

    async def dispatch(self, channel: str, raw: str) -> bool:
        """Run the local handler for one broker message.

        Returns True if a handler ran. Handler errors are logged and
        contained so one bad event can't stop the listener.
        """
        try:
            envelope = json.loads(raw)
            origin = envelope["origin"]
            event = envelope["event"]
        except (ValueError, KeyError, TypeError):
            logger.warning("bridge.malformed_message", channel=channel)
            return False

        if origin == self.process_id:
            return False

        record = self._records.get(channel)
        if record is None:
            return False

        try:
            await record.handler(event)
        except Exception:
            logger.exception("bridge.handler_failed", channel=channel, origin=origin)
            return False
        return True
