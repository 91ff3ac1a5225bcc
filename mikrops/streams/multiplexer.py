"""Stream multiplexer: at most one subscription session per key, shared by N subscribers.

Manages the keyed registry of live subscription sessions, reference-counted
subscribers with bounded buffers, non-blocking fan-out and bounded restart of
broken sessions.

Lock discipline:
- the per-key lock serializes attach/detach decisions for one key and is
  dropped from the lock map once nobody holds or waits for it
- registry updates and subscriber closing (``_finalize``) never await, so a
  supervisor finalizes without the key lock and a detach that cancels and
  awaits the supervisor under that lock cannot deadlock
- a done-callback finalizes the entry of a cancelled supervisor, so an entry never
  outlives its task even if the detaching caller is cancelled mid-way
"""

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import partial
from typing import Any
from uuid import uuid4

from mikrops.domain.exceptions import MaxRestartsExceeded, SessionFailed
from mikrops.infra.broker import EventBroker
from mikrops.infra.observability import metrics
from mikrops.infra.routeros.exceptions import DEFAULT_RECONNECT_SIGNATURES
from mikrops.streams.kinds import (
    CHANNEL_DEVICE_EVENTS,
    FinalEvent,
    StreamEvent,
    SubscriptionKey,
)
from mikrops.streams.session import (
    ConnectionProvider,
    SessionOutcome,
    SubscriptionSession,
)

logger = logging.getLogger(__name__)

# Final-event reasons that end a subscriber with an error
FAILURE_REASONS = frozenset({"failed", "max_restarts_exceeded"})


class Subscriber:
    """One consumer of a subscription session.

    Holds a bounded buffer: when full, new events are dropped for this
    subscriber only and ``dropped`` grows. ``close`` is idempotent and records
    the final event the consumer sees after draining the buffer.

    Example:
        async for event in subscriber:
            await websocket.send_json(event.envelope())
        if subscriber.final and subscriber.final.is_error:
            ...
    """

    def __init__(self, key: SubscriptionKey, capacity: int = 50) -> None:
        self.key = key
        self.subscriber_id = str(uuid4())
        self.capacity = capacity
        self.dropped = 0
        self.delivered = 0
        self.final: FinalEvent | None = None
        self.created_at = datetime.now(UTC)
        self._buffer: deque[StreamEvent] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._buffer)

    def offer(self, event: StreamEvent) -> bool:
        """Enqueue without blocking. Returns False if dropped or closed."""
        if self._closed:
            return False
        if len(self._buffer) >= self.capacity:
            self.dropped += 1
            return False
        self._buffer.append(event)
        self._wakeup.set()
        return True

    def close(self, final: FinalEvent | None = None) -> bool:
        """Close once; later calls are no-ops and return False."""
        if self._closed:
            return False
        self._closed = True
        self.final = final
        self._wakeup.set()
        return True

    async def get(self) -> StreamEvent | None:
        """Next event, or None once closed and drained."""
        while True:
            if self._buffer:
                self.delivered += 1
                return self._buffer.popleft()
            if self._closed:
                return None
            self._wakeup.clear()
            await self._wakeup.wait()

    def __aiter__(self) -> "Subscriber":
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


@dataclass
class ActiveSession:
    """Registry entry for one subscription key.

    Attributes:
        key: Subscription key
        subscribers: Attached subscribers by id
        task: Supervisor task (runs independently of any subscriber)
        restart_count: Broken reopens so far; never reset
        session: Current session instance
        terminated: Set once subscribers have been closed
        stop_request: Final event and reason of a pending stop
    """

    key: SubscriptionKey
    subscribers: dict[str, Subscriber] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None
    restart_count: int = 0
    session: SubscriptionSession | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    terminated: bool = False
    stop_request: tuple[FinalEvent, str] | None = None

    @property
    def last_event_at(self) -> datetime | None:
        return self.session.last_event_at if self.session else None

    @property
    def finishing(self) -> bool:
        """True once no new subscriber could receive events from this entry."""
        if self.terminated or self.stop_request is not None:
            return True
        if self.task is not None and self.task.done():
            return True
        return self.session is not None and self.session.outcome == SessionOutcome.COMPLETE


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


SessionFactory = Callable[..., SubscriptionSession]


class StreamMultiplexer:
    """Keyed registry of subscription sessions with reference-counted subscribers.

    Example:
        multiplexer = StreamMultiplexer(provider, broker)

        async with multiplexer.subscription(SubscriptionKey.traffic(device_id, "ether1")) as sub:
            async for event in sub:
                print(event.envelope())

        await multiplexer.shutdown()
    """

    def __init__(
        self,
        provider: ConnectionProvider,
        broker: EventBroker | None = None,
        *,
        max_restarts: int = 3,
        restart_delay: float = 5.0,
        subscriber_queue_capacity: int = 50,
        reconnect_signatures: Sequence[str] = DEFAULT_RECONNECT_SIGNATURES,
        session_factory: SessionFactory = SubscriptionSession,
    ) -> None:
        """Initialize stream multiplexer.

        Args:
            provider: Source of dedicated device connections
            broker: Event broker receiving a copy of every emitted event
            max_restarts: Broken reopens before a session gives up
            restart_delay: Seconds to wait before reopening a broken session
            subscriber_queue_capacity: Per-subscriber buffer size
            reconnect_signatures: Transport-loss signatures passed to sessions
            session_factory: Session constructor (tests inject fakes)
        """
        self.provider = provider
        self.broker = broker
        self.max_restarts = max_restarts
        self.restart_delay = restart_delay
        self.subscriber_queue_capacity = subscriber_queue_capacity
        self.reconnect_signatures = tuple(reconnect_signatures)
        self._session_factory = session_factory

        self._sessions: dict[SubscriptionKey, ActiveSession] = {}
        self._key_locks: dict[SubscriptionKey, _KeyLock] = {}
        self._closed = False

        self._total_sessions = 0
        self._total_events = 0

        logger.info(
            "StreamMultiplexer initialized",
            extra={
                "max_restarts": max_restarts,
                "restart_delay": restart_delay,
                "subscriber_queue_capacity": subscriber_queue_capacity,
            },
        )

    @asynccontextmanager
    async def _locked(self, key: SubscriptionKey) -> AsyncIterator[None]:
        """Hold the per-key lock; the lock is forgotten when its last user leaves."""
        holder = self._key_locks.get(key)
        if holder is None:
            holder = self._key_locks[key] = _KeyLock()
        holder.users += 1
        try:
            async with holder.lock:
                yield
        finally:
            holder.users -= 1
            if holder.users == 0 and self._key_locks.get(key) is holder:
                del self._key_locks[key]

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    async def subscribe(self, key: SubscriptionKey) -> Subscriber:
        """Attach a new subscriber, starting a session for the key if none is live.

        Raises:
            SessionFailed: The multiplexer has been shut down
        """
        if self._closed:
            raise SessionFailed("Stream multiplexer is shut down", context={"key": str(key)})

        async with self._locked(key):
            entry = self._sessions.get(key)
            if entry is None or entry.finishing:
                # a finishing entry is left to its supervisor to finalize
                entry = ActiveSession(key=key)
                self._sessions[key] = entry
                entry.task = asyncio.create_task(self._supervise(entry), name=f"stream-{key}")
                entry.task.add_done_callback(partial(self._supervisor_done, entry))
                self._total_sessions += 1
                metrics.record_session_started(key.kind.value)
                logger.info(
                    "Subscription session started",
                    extra={"device_id": key.device_id, "subscription_key": str(key), "kind": key.kind.value},
                )

            subscriber = Subscriber(key, self.subscriber_queue_capacity)
            entry.subscribers[subscriber.subscriber_id] = subscriber
            metrics.record_subscriber_attached(key.kind.value)

            logger.debug(
                "Subscriber attached",
                extra={
                    "subscription_key": str(key),
                    "subscriber_id": subscriber.subscriber_id,
                    "subscriber_count": len(entry.subscribers),
                },
            )
            return subscriber

    async def unsubscribe(self, subscriber: Subscriber) -> None:
        """Detach a subscriber; idempotent. The last one out cancels the session."""
        key = subscriber.key
        async with self._locked(key):
            entry = self._sessions.get(key)
            removed = (
                entry is not None
                and entry.subscribers.pop(subscriber.subscriber_id, None) is not None
            )
            if subscriber.close(FinalEvent("unsubscribed")):
                metrics.record_subscriber_detached(key.kind.value)
            if not removed or entry is None:
                return

            logger.debug(
                "Subscriber detached",
                extra={
                    "subscription_key": str(key),
                    "subscriber_id": subscriber.subscriber_id,
                    "subscriber_count": len(entry.subscribers),
                    "dropped": subscriber.dropped,
                },
            )

            if not entry.subscribers:
                await self._stop(entry, FinalEvent("idle"), reason="cancelled")

    @asynccontextmanager
    async def subscription(self, key: SubscriptionKey) -> AsyncIterator[Subscriber]:
        """Scope a subscriber; leaving the block unsubscribes, even when cancelled."""
        subscriber = await self.subscribe(key)
        try:
            yield subscriber
        finally:
            await asyncio.shield(self.unsubscribe(subscriber))

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _stop(self, entry: ActiveSession, final: FinalEvent, reason: str) -> None:
        """Cancel the supervisor and close everything. Caller holds the key lock."""
        if entry.stop_request is None:
            entry.stop_request = (final, reason)
        task = entry.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])
        self._finalize(entry, final, reason)

    def _finalize(self, entry: ActiveSession, final: FinalEvent, reason: str) -> None:
        """Remove the entry and close each subscriber exactly once."""
        if entry.terminated:
            return
        entry.terminated = True

        if self._sessions.get(entry.key) is entry:
            del self._sessions[entry.key]

        kind = entry.key.kind.value
        for subscriber in entry.subscribers.values():
            if subscriber.close(final):
                metrics.record_subscriber_detached(kind)
        entry.subscribers.clear()

        metrics.record_session_terminated(kind, reason)
        logger.info(
            "Subscription session terminated",
            extra={
                "device_id": entry.key.device_id,
                "subscription_key": str(entry.key),
                "kind": kind,
                "reason": reason,
                "restart_count": entry.restart_count,
            },
        )

        if reason != "cancelled" and self.broker is not None:
            self.broker.publish(
                CHANNEL_DEVICE_EVENTS,
                {
                    "type": "subscription_terminated",
                    "device_id": entry.key.device_id,
                    "kind": kind,
                    "selector": entry.key.selector,
                    "reason": final.reason,
                    "error": final.error,
                },
            )

    async def terminate_device(self, device_id: str, reason: str = "device-deactivated") -> int:
        """Stop every session of one device; subscribers get a final error event.

        Returns:
            Number of sessions terminated
        """
        keys = [key for key in list(self._sessions) if key.device_id == device_id]
        count = 0
        for key in keys:
            async with self._locked(key):
                entry = self._sessions.get(key)
                if entry is None:
                    continue
                await self._stop(
                    entry,
                    FinalEvent(reason, error=f"{reason}: device {device_id}"),
                    reason="terminated",
                )
                count += 1
        return count

    async def shutdown(self) -> None:
        """Stop all sessions; further subscribes are refused."""
        self._closed = True
        keys = list(self._sessions)
        for key in keys:
            async with self._locked(key):
                entry = self._sessions.get(key)
                if entry is not None:
                    await self._stop(entry, FinalEvent("shutdown"), reason="cancelled")
        logger.info("StreamMultiplexer shut down", extra={"sessions": len(keys)})

    # ------------------------------------------------------------------
    # Supervisor and fan-out
    # ------------------------------------------------------------------

    async def _supervise(self, entry: ActiveSession) -> None:
        key = entry.key
        extra: dict[str, Any] = {
            "device_id": key.device_id,
            "subscription_key": str(key),
            "kind": key.kind.value,
        }

        try:
            while True:
                session = self._session_factory(
                    key,
                    self.provider,
                    partial(self._fan_out, entry),
                    reconnect_signatures=self.reconnect_signatures,
                )
                entry.session = session
                outcome = await session.run()

                if outcome == SessionOutcome.COMPLETE:
                    final, reason = FinalEvent("complete"), "complete"
                    break

                if entry.restart_count >= self.max_restarts:
                    error = MaxRestartsExceeded(
                        f"Subscription {key} gave up after {entry.restart_count} restarts",
                        context={"device_id": key.device_id, "key": str(key)},
                    )
                    logger.warning(error.message, extra={**extra, "restart_count": entry.restart_count})
                    final = FinalEvent("max_restarts_exceeded", error=error.message)
                    reason = "max_restarts"
                    break

                entry.restart_count += 1
                metrics.record_session_restart(key.kind.value)
                logger.info(
                    "Subscription session broken, reopening",
                    extra={**extra, "restart_count": entry.restart_count},
                )
                await asyncio.sleep(self.restart_delay)

        except SessionFailed as e:
            logger.warning(
                "Subscription session failed",
                extra={**extra, "error": e.message},
            )
            final, reason = FinalEvent("failed", error=e.message), "failed"
        except Exception:
            logger.exception("Subscription supervisor crashed", extra=extra)
            final, reason = FinalEvent("failed", error="internal error"), "failed"

        self._finalize(entry, final, reason)

    def _supervisor_done(self, entry: ActiveSession, task: asyncio.Task[None]) -> None:
        """Finalize an entry whose supervisor was cancelled, even before it first ran."""
        final, reason = entry.stop_request or (FinalEvent("shutdown"), "cancelled")
        self._finalize(entry, final, reason)

    def _fan_out(self, entry: ActiveSession, event: StreamEvent) -> None:
        """Deliver to every subscriber without blocking, then copy to the broker."""
        kind = entry.key.kind.value
        for subscriber in list(entry.subscribers.values()):
            if not subscriber.offer(event) and not subscriber.closed:
                metrics.record_subscriber_drop(kind)
        self._total_events += 1

        if self.broker is not None:
            self.broker.publish(event.channel, event.broker_payload())

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def has_session(self, key: SubscriptionKey) -> bool:
        return key in self._sessions

    def get_session(self, key: SubscriptionKey) -> ActiveSession | None:
        return self._sessions.get(key)

    def get_subscriber_count(self, key: SubscriptionKey | None = None) -> int:
        if key is not None:
            entry = self._sessions.get(key)
            return len(entry.subscribers) if entry else 0
        return sum(len(entry.subscribers) for entry in self._sessions.values())

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "total_subscribers": self.get_subscriber_count(),
            "total_sessions_started": self._total_sessions,
            "total_events": self._total_events,
            "sessions": [
                {
                    "key": str(entry.key),
                    "subscribers": len(entry.subscribers),
                    "restart_count": entry.restart_count,
                    "dropped": sum(s.dropped for s in entry.subscribers.values()),
                    "last_event_at": entry.last_event_at.isoformat() if entry.last_event_at else None,
                }
                for entry in self._sessions.values()
            ],
        }


__all__ = ["StreamMultiplexer", "Subscriber", "ActiveSession", "FAILURE_REASONS"]
