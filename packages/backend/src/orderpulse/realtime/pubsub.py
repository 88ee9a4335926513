"""Broker adapters: the cross-process half of the fan-out layer.

Learn: Redis pub/sub is fire-and-forget. If no process is listening, the
message is lost. That's fine here: every push is also reflected in the
status cache, and clients can always re-query the API to catch up.

Two implementations behind one small interface:
- RedisBroker: production. One connection pool per process; each
  subscription gets its own PubSub connection.
- InMemoryBroker: every broker attached to the same InMemoryHub sees every
  publish. One process in development, or several simulated "processes"
  in tests.

Brokers move strings. Envelopes and JSON are the bridge's business.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Iterable, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from orderpulse.realtime.errors import BrokerUnavailableError

logger = structlog.get_logger()


class BrokerSubscription(ABC):
    """A live subscription to one or more channels."""

    @abstractmethod
    def messages(self) -> AsyncIterator[tuple[str, str]]:
        """Yield (channel, payload) pairs until closed.

        Raises:
            BrokerUnavailableError: if the connection drops
        """

    @abstractmethod
    async def close(self) -> None:
        ...


class Broker(ABC):
    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def publish(self, channel: str, message: str) -> int:
        """Publish a message. Returns the number of receiving subscriptions.

        Raises:
            BrokerUnavailableError: if the broker can't be reached
        """

    @abstractmethod
    async def subscribe(self, channels: Iterable[str]) -> BrokerSubscription:
        """Subscribe to channels. Registration is complete when this returns."""


# ═══════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════


class RedisSubscription(BrokerSubscription):
    def __init__(self, pubsub: aioredis.client.PubSub):
        self._pubsub = pubsub

    async def messages(self) -> AsyncIterator[tuple[str, str]]:
        try:
            async for message in self._pubsub.listen():
                if message["type"] == "message":
                    yield message["channel"], message["data"]
        except RedisError as e:
            raise BrokerUnavailableError(f"Redis subscription lost: {e}") from e

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe()
        except RedisError:
            logger.debug("broker.unsubscribe_failed")
        await self._pubsub.aclose()


class RedisBroker(Broker):
    """Redis pub/sub broker (redis.asyncio)."""

    def __init__(self, url: str):
        self.url = url
        self._redis: Optional[aioredis.Redis] = None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Redis not initialized. Call connect() first.")
        return self._redis

    async def connect(self) -> None:
        self._redis = aioredis.from_url(
            self.url,
            encoding="utf-8",
            decode_responses=True,
        )
        # Verify connection. The client stays usable and reconnects lazily.
        try:
            await self._redis.ping()
        except (RedisError, OSError) as e:
            raise BrokerUnavailableError(f"redis unreachable at {self.url}: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except (RedisError, RuntimeError):
            return False

    async def publish(self, channel: str, message: str) -> int:
        try:
            return await self.redis.publish(channel, message)
        except (RedisError, RuntimeError) as e:
            raise BrokerUnavailableError(f"publish to {channel} failed: {e}") from e

    async def subscribe(self, channels: Iterable[str]) -> BrokerSubscription:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(*channels)
        except RedisError as e:
            await pubsub.aclose()
            raise BrokerUnavailableError(f"subscribe failed: {e}") from e
        return RedisSubscription(pubsub)


# ═══════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════

_CLOSED = object()


class InMemoryHub:
    """Shared message bus for InMemoryBrokers in one event loop."""

    def __init__(self):
        self._queues: dict[str, set[asyncio.Queue]] = {}

    def attach(self, channels: Iterable[str], queue: asyncio.Queue) -> None:
        for channel in channels:
            self._queues.setdefault(channel, set()).add(queue)

    def detach(self, queue: asyncio.Queue) -> None:
        for channel in list(self._queues):
            self._queues[channel].discard(queue)
            if not self._queues[channel]:
                del self._queues[channel]

    def publish(self, channel: str, message: str) -> int:
        queues = self._queues.get(channel, ())
        for queue in queues:
            queue.put_nowait((channel, message))
        return len(queues)

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, ()))


class InMemorySubscription(BrokerSubscription):
    def __init__(self, hub: InMemoryHub, channels: Iterable[str]):
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue()
        hub.attach(channels, self._queue)

    async def messages(self) -> AsyncIterator[tuple[str, str]]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def close(self) -> None:
        self._hub.detach(self._queue)
        self._queue.put_nowait(_CLOSED)


class InMemoryBroker(Broker):
    def __init__(self, hub: Optional[InMemoryHub] = None):
        self.hub = hub or InMemoryHub()
        self.available = True

    async def connect(self) -> None:
        self.available = True

    async def close(self) -> None:
        self.available = False

    async def ping(self) -> bool:
        return self.available

    async def publish(self, channel: str, message: str) -> int:
        if not self.available:
            raise BrokerUnavailableError(f"publish to {channel} failed: broker closed")
        return self.hub.publish(channel, message)

    async def subscribe(self, channels: Iterable[str]) -> BrokerSubscription:
        if not self.available:
            raise BrokerUnavailableError("subscribe failed: broker closed")
        return InMemorySubscription(self.hub, channels)
