"""RealtimeHub: one process's complete real-time stack, with a lifecycle.

Learn: No module-level registries. The hub is built once in the FastAPI
lifespan, hung on app.state, and torn down at shutdown. Tests build as
many hubs as they like. Two hubs over one InMemoryHub behave like two
server processes sharing a Redis.

Background tasks owned here:
- the bridge listener (broker → local registries)
- the streaming heartbeat (every heartbeat_interval_seconds)
- the cache sweep (drops expired snapshots every cache_sweep_interval_seconds)

All three start in start() and are cancelled in stop().
"""

import asyncio
from typing import Optional

import structlog

from orderpulse.config import Settings
from orderpulse.db.store import RecordStore
from orderpulse.realtime.bridge import BrokerBridge
from orderpulse.realtime.coordinator import DeliveryCoordinator
from orderpulse.realtime.errors import BrokerUnavailableError
from orderpulse.realtime.pubsub import Broker, InMemoryBroker, RedisBroker
from orderpulse.realtime.rooms import RoomRegistry
from orderpulse.realtime.status_cache import StatusCache
from orderpulse.realtime.streaming import StreamingRegistry
from orderpulse.realtime.waiter import ChangeWaiter

logger = structlog.get_logger()


def build_broker(settings: Settings) -> Broker:
    if settings.broker_backend == "memory":
        return InMemoryBroker()
    return RedisBroker(settings.redis_url)


class RealtimeHub:
    def __init__(
        self,
        coordinator: DeliveryCoordinator,
        broker: Broker,
        sweep_interval: float = 60.0,
    ):
        self.coordinator = coordinator
        self.broker = broker
        self.sweep_interval = sweep_interval
        self._sweep_task: Optional[asyncio.Task] = None
        self.started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[RecordStore] = None,
        broker: Optional[Broker] = None,
        process_id: Optional[str] = None,
    ) -> "RealtimeHub":
        broker = broker or build_broker(settings)
        cache = StatusCache(ttl_seconds=settings.status_cache_ttl_seconds)
        waiter = ChangeWaiter(
            cache,
            poll_interval=settings.long_poll_interval_seconds,
            max_wait_ms=settings.long_poll_max_timeout_ms,
            progress_threshold=settings.progress_threshold,
        )
        coordinator = DeliveryCoordinator(
            cache=cache,
            waiter=waiter,
            streams=StreamingRegistry(heartbeat_interval=settings.heartbeat_interval_seconds),
            rooms=RoomRegistry(),
            bridge=BrokerBridge(
                broker,
                process_id=process_id,
                reconnect_delay=settings.broker_reconnect_delay_seconds,
            ),
            store=store,
            location_cache=StatusCache(ttl_seconds=settings.location_cache_ttl_seconds),
        )
        return cls(coordinator, broker, sweep_interval=settings.cache_sweep_interval_seconds)

    # Shortcuts used by routes and the WebSocket handler.

    @property
    def streams(self) -> StreamingRegistry:
        return self.coordinator.streams

    @property
    def rooms(self) -> RoomRegistry:
        return self.coordinator.rooms

    @property
    def cache(self) -> StatusCache:
        return self.coordinator.cache

    @property
    def bridge(self) -> BrokerBridge:
        return self.coordinator.bridge

    # ─── Lifecycle ───────────────────────────────────────

    async def start(self) -> None:
        if self.started:
            return
        try:
            await self.broker.connect()
        except BrokerUnavailableError as e:
            # Local delivery works without the broker; the bridge retries.
            logger.warning("hub.broker_unavailable", error=str(e))
        await self.coordinator.attach()
        await self.bridge.start()
        self.streams.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.started = True
        logger.info(
            "hub.started",
            process_id=self.bridge.process_id,
            channels=self.bridge.channels(),
        )

    async def stop(self) -> None:
        if not self.started:
            return
        self.started = False
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.streams.stop()
        await self.bridge.stop()
        await self.broker.close()
        logger.info("hub.stopped", process_id=self.bridge.process_id)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.cache.purge_expired()
            removed += self.coordinator.location_cache.purge_expired()
            if removed:
                logger.debug("hub.cache_swept", removed=removed)
