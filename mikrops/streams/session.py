"""Subscription session: one long-running listen producing typed events.

A session opens a dedicated connection for its device, starts the kind's
listen command and turns every record into a :class:`StreamEvent`. ``run``
returns how the stream ended; restart policy lives in the multiplexer.

Outcomes:
- ``BROKEN``: the transport ended (or dialing failed, or the router ended an
  open-ended listen with ``!done``); the supervisor may reopen
- ``COMPLETE``: a finite stream (ping with ``count``) ended with ``!done``
- :class:`SessionFailed` raised: a non-transport error (trap, auth, unknown
  device) that reopening would not fix
- ``asyncio.CancelledError`` propagates unchanged (quiet stop)
"""

import asyncio
import contextlib
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from mikrops.domain.exceptions import DomainError, SessionFailed
from mikrops.infra.routeros.exceptions import (
    DEFAULT_RECONNECT_SIGNATURES,
    RouterOSConnectionError,
    RouterOSError,
    is_transport_lost,
)
from mikrops.streams.kinds import (
    PingReply,
    PingSummary,
    StreamEvent,
    StreamSpec,
    SubscriptionKey,
    spec_for,
)

logger = logging.getLogger(__name__)


class SessionOutcome(str, Enum):
    BROKEN = "broken"
    COMPLETE = "complete"


class ListenConnection(Protocol):
    device_id: str

    async def listen(self, command: str, args: Mapping[str, object] | None = None) -> Any: ...

    async def reconnect(self) -> None: ...


class ConnectionProvider(Protocol):
    """Hands out dedicated connections for subscription sessions."""

    async def open(self, device_id: str) -> ListenConnection: ...

    async def release(self, connection: ListenConnection) -> None: ...


EventSink = Callable[[StreamEvent], None]


class SubscriptionSession:
    """Runs one listen for a subscription key.

    Example:
        session = SubscriptionSession(key, provider, emit=fan_out)
        outcome = await session.run()
    """

    def __init__(
        self,
        key: SubscriptionKey,
        provider: ConnectionProvider,
        emit: EventSink,
        *,
        reconnect_signatures: Sequence[str] = DEFAULT_RECONNECT_SIGNATURES,
    ) -> None:
        self.key = key
        self.spec: StreamSpec = spec_for(key.kind)
        self.provider = provider
        self.emit = emit
        self.reconnect_signatures = tuple(reconnect_signatures)
        self.last_event_at: datetime | None = None
        self.events_emitted = 0
        self.outcome: SessionOutcome | None = None

    def _log_extra(self, **fields: Any) -> dict[str, Any]:
        return {
            "device_id": self.key.device_id,
            "subscription_key": str(self.key),
            "kind": self.key.kind.value,
            **fields,
        }

    async def run(self) -> SessionOutcome:
        """Open the listen and pump records until the stream ends.

        Raises:
            SessionFailed: Non-recoverable error
            asyncio.CancelledError: Caller cancelled the session
        """
        try:
            connection = await self.provider.open(self.key.device_id)
        except RouterOSConnectionError as e:
            logger.warning(
                "Subscription dial failed",
                extra=self._log_extra(error=str(e)),
            )
            return SessionOutcome.BROKEN
        except (RouterOSError, DomainError) as e:
            raise SessionFailed(
                f"Cannot open subscription {self.key}: {e}",
                context={"device_id": self.key.device_id, "key": str(self.key)},
            ) from e

        try:
            # read by the multiplexer while the connection is being released
            self.outcome = await self._pump(connection)
            return self.outcome
        finally:
            await self.provider.release(connection)

    async def _open_stream(self, connection: ListenConnection) -> Any:
        args = self.spec.build_args(self.key)
        try:
            return await connection.listen(self.spec.command, args)
        except RouterOSError as e:
            if not is_transport_lost(e, self.reconnect_signatures):
                raise SessionFailed(
                    f"Listen rejected for {self.key}: {e}",
                    context={"device_id": self.key.device_id, "key": str(self.key)},
                ) from e

        logger.info("Listen hit transport loss, reconnecting once", extra=self._log_extra())
        await connection.reconnect()
        return await connection.listen(self.spec.command, args)

    async def _pump(self, connection: ListenConnection) -> SessionOutcome:
        try:
            stream = await self._open_stream(connection)
        except RouterOSError as e:
            if is_transport_lost(e, self.reconnect_signatures) or isinstance(
                e, RouterOSConnectionError
            ):
                return SessionOutcome.BROKEN
            raise SessionFailed(
                f"Listen failed for {self.key}: {e}",
                context={"device_id": self.key.device_id, "key": str(self.key)},
            ) from e

        logger.debug("Subscription listen started", extra=self._log_extra())

        last_ping: PingReply | None = None
        summary_sent = False

        try:
            async for record in stream:
                decoded = self.spec.decode(record)
                if decoded is None:
                    continue
                event_type, sample = decoded
                if isinstance(sample, PingReply):
                    last_ping = sample
                if event_type == "summary":
                    summary_sent = True
                self._deliver(event_type, sample)
        except RouterOSError as e:
            if is_transport_lost(e, self.reconnect_signatures):
                logger.info(
                    "Subscription stream broken",
                    extra=self._log_extra(error=str(e)),
                )
                return SessionOutcome.BROKEN
            raise SessionFailed(
                f"Subscription {self.key} failed: {e}",
                context={"device_id": self.key.device_id, "key": str(self.key)},
            ) from e
        finally:
            if not stream.finished:
                with contextlib.suppress(RouterOSError):
                    await asyncio.shield(stream.cancel())

        if stream.completed and self.spec.finite(self.key):
            if not summary_sent and last_ping is not None:
                self._deliver("summary", PingSummary.from_reply(last_ping))
            return SessionOutcome.COMPLETE

        logger.info("Router ended an open-ended listen", extra=self._log_extra())
        return SessionOutcome.BROKEN

    def _deliver(self, event_type: str, sample: Any) -> None:
        event = StreamEvent(
            key=self.key,
            type=event_type,  # type: ignore[arg-type]
            data=sample,
            channel=self.spec.channel(sample),
        )
        self.last_event_at = datetime.now(UTC)
        self.events_emitted += 1
        self.emit(event)
