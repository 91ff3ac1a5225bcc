"""Event broker backends.

Carries small JSON event payloads (traffic samples, log lines, ping replies,
PPPoE session changes) to consumers outside the stream multiplexer.

Contract:
- ``publish`` is synchronous, fire-and-forget and never raises; failures are
  logged and counted
- delivery is at-most-once with no ordering across channels
- ``subscribe`` yields payload strings for one channel until the consumer stops

Example:
    broker = FanoutEventBroker(
        InProcessEventBroker(),
        RedisEventBroker(redis_url=settings.bus_address),
    )
    await broker.start()

    broker.publish("device:events", {"type": "pppoe_event", "status": "connected"})

    async for payload in broker.subscribe("device:events"):
        ...

    await broker.close()
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from typing import Any

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from mikrops.infra.observability import metrics

logger = logging.getLogger(__name__)


def encode_payload(payload: Mapping[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str, separators=(",", ":"))


class EventBroker(ABC):
    """Abstract base class for publish/subscribe transports."""

    name = "abstract"

    async def start(self) -> None:
        """Acquire resources; default is a no-op."""

    async def close(self) -> None:
        """Flush and release resources; default is a no-op."""

    @abstractmethod
    def publish(self, channel: str, payload: Mapping[str, Any] | str) -> None:
        """Publish one payload. Must not raise or block."""

    @abstractmethod
    def subscribe(self, channel: str) -> AsyncIterator[str]:
        """Yield payloads published to ``channel`` after subscribing."""


class InProcessEventBroker(EventBroker):
    """In-memory broker with bounded per-subscriber queues (drop on full)."""

    name = "memory"

    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[str]]] = {}
        self.dropped = 0

    def publish(self, channel: str, payload: Mapping[str, Any] | str) -> None:
        try:
            data = encode_payload(payload)
        except (TypeError, ValueError) as e:
            logger.error(
                "Unserializable broker payload",
                extra={"channel": channel, "error": str(e)},
            )
            metrics.record_broker_publish(self.name, success=False)
            return

        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(data)
            except asyncio.QueueFull:
                self.dropped += 1
                logger.debug("Broker subscriber queue full, dropping", extra={"channel": channel})
        metrics.record_broker_publish(self.name, success=True)

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(channel, set()).add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            subscribers = self._subscribers.get(channel)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))


class RedisEventBroker(EventBroker):
    """Redis pub/sub broker.

    ``publish`` only enqueues into a bounded outbox; a background task drains
    it into Redis so slow or unreachable Redis never stalls a caller.
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str,
        outbox_size: int = 1000,
        pool_size: int = 10,
        timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize Redis event broker.

        Args:
            redis_url: Redis connection URL (redis:// or rediss://)
            outbox_size: Pending publishes kept before new ones are dropped
            pool_size: Connection pool size
            timeout_seconds: Socket timeout
        """
        self.redis_url = redis_url
        self.pool_size = pool_size
        self.timeout_seconds = timeout_seconds

        self._outbox: asyncio.Queue[tuple[str, str]] = asyncio.Queue(maxsize=outbox_size)
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._publisher: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Create the client and start the publisher task.

        An unreachable Redis is logged, not fatal: publishes keep failing and
        being counted until it comes back.
        """
        self._pool = ConnectionPool.from_url(
            self.redis_url,
            max_connections=self.pool_size,
            socket_timeout=self.timeout_seconds,
            socket_connect_timeout=self.timeout_seconds,
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)
        try:
            await self._client.ping()  # type: ignore[misc]
            logger.info("Redis event broker connected", extra={"redis_url": self.redis_url})
        except RedisError as e:
            logger.warning(
                "Redis event broker unreachable at startup",
                extra={"redis_url": self.redis_url, "error": str(e)},
            )
        self._publisher = asyncio.create_task(self._drain(), name="redis-broker-publisher")

    def publish(self, channel: str, payload: Mapping[str, Any] | str) -> None:
        try:
            self._outbox.put_nowait((channel, encode_payload(payload)))
        except asyncio.QueueFull:
            logger.warning("Broker outbox full, dropping event", extra={"channel": channel})
            metrics.record_broker_publish(self.name, success=False)
        except (TypeError, ValueError) as e:
            logger.error(
                "Unserializable broker payload",
                extra={"channel": channel, "error": str(e)},
            )
            metrics.record_broker_publish(self.name, success=False)

    async def _drain(self) -> None:
        while True:
            channel, data = await self._outbox.get()
            try:
                if self._client is None:
                    raise RedisError("Redis client is closed")
                await self._client.publish(channel, data)
                metrics.record_broker_publish(self.name, success=True)
            except RedisError as e:
                logger.warning(
                    "Redis publish failed",
                    extra={"channel": channel, "error": str(e)},
                )
                metrics.record_broker_publish(self.name, success=False)
            finally:
                self._outbox.task_done()

    async def subscribe(self, channel: str) -> AsyncIterator[str]:
        if self._client is None:
            raise RuntimeError("RedisEventBroker.start() must be awaited before subscribe")
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") == "message":
                    yield message["data"]
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self, flush_timeout: float = 5.0) -> None:
        """Flush the outbox (bounded wait) and close the client."""
        if self._publisher is not None:
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=flush_timeout)
            except TimeoutError:
                logger.warning(
                    "Broker outbox not flushed before shutdown",
                    extra={"pending": self._outbox.qsize()},
                )
            self._publisher.cancel()
            await asyncio.gather(self._publisher, return_exceptions=True)
            self._publisher = None

        client, pool = self._client, self._pool
        self._client = None
        self._pool = None
        if client is not None:
            try:
                await client.aclose()
            except RedisError as exc:
                logger.error("Error while closing Redis client", exc_info=exc)
        if pool is not None:
            await pool.aclose()

        logger.info("Redis event broker closed")

    @property
    def pending(self) -> int:
        return self._outbox.qsize()


class FanoutEventBroker(EventBroker):
    """Publishes to every child; subscribes through the first one."""

    name = "fanout"

    def __init__(self, *children: EventBroker) -> None:
        if not children:
            raise ValueError("FanoutEventBroker needs at least one broker")
        self.children = list(children)

    async def start(self) -> None:
        for child in self.children:
            await child.start()

    async def close(self) -> None:
        for child in self.children:
            await child.close()

    def publish(self, channel: str, payload: Mapping[str, Any] | str) -> None:
        for child in self.children:
            child.publish(channel, payload)

    def subscribe(self, channel: str) -> AsyncIterator[str]:
        return self.children[0].subscribe(channel)


__all__ = [
    "EventBroker",
    "InProcessEventBroker",
    "RedisEventBroker",
    "FanoutEventBroker",
    "encode_payload",
]
