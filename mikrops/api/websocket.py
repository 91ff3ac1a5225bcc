"""WebSocket boundary: live device streams to browser clients.

Each socket resolves a subscription key from its path, attaches to the stream
multiplexer and then loops over:
- next event from the subscriber → JSON envelope, written within ``write_timeout``
- subscriber closed → optional error envelope, then close 1000 (1011 on failure)
- client disconnected → unsubscribe and end
- every keepalive interval, events or not → ``{"type": "ping"}``

Protocol-level ping frames are sent by uvicorn (``ws_ping_interval``); the
JSON ping lets browser code, which cannot see ping frames, detect a dead feed.

Authentication uses the ``token`` query parameter (browsers cannot set
headers on a WebSocket upgrade).
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from mikrops.domain.exceptions import DomainError, ErrorKind, error_kind
from mikrops.infra.observability import metrics
from mikrops.infra.observability.logging import set_correlation_id
from mikrops.infra.routeros.exceptions import RouterOSError
from mikrops.security.auth import TenantContext
from mikrops.streams.kinds import SubscriptionKey, ppp_active_channel, ppp_inactive_channel
from mikrops.streams.multiplexer import FAILURE_REASONS, Subscriber

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])

CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_ERROR = 1011

# Kinds that are the client's fault rather than ours
_CLIENT_ERROR_KINDS = {
    ErrorKind.NOT_FOUND,
    ErrorKind.VALIDATION,
    ErrorKind.NO_ACTIVE_DEVICE,
    ErrorKind.AUTH,
}

KeyResolver = Callable[[TenantContext], Awaitable[SubscriptionKey]]


def _container(websocket: WebSocket) -> Any:
    return websocket.app.state.container


async def _authenticate(websocket: WebSocket) -> TenantContext | None:
    """Validate the ``token`` query parameter; rejects the upgrade on failure."""
    try:
        return _container(websocket).validator.validate(websocket.query_params.get("token"))
    except DomainError as e:
        logger.warning("WebSocket authentication failed", extra={"error": e.message})
        await websocket.close(code=CLOSE_POLICY)
        return None


async def _wait_disconnect(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


class _KeepaliveTicker:
    """Fixed-period keepalive deadline, independent of event traffic."""

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._next = time.monotonic() + interval

    def remaining(self) -> float:
        return max(0.0, self._next - time.monotonic())

    def due(self) -> bool:
        now = time.monotonic()
        if now < self._next:
            return False
        while self._next <= now:
            self._next += self.interval
        return True


async def _close(websocket: WebSocket, code: int) -> None:
    if websocket.application_state == WebSocketState.CONNECTED:
        try:
            await websocket.close(code=code)
        except (RuntimeError, WebSocketDisconnect):
            pass


async def stream_subscription(websocket: WebSocket, subscriber: Subscriber) -> int:
    """Pump one subscriber into an accepted socket.

    Returns:
        Close code to send, or 0 when the client already left
    """
    settings = _container(websocket).settings
    write_timeout = settings.server_write_timeout
    ticker = _KeepaliveTicker(settings.subscription_keepalive_interval)

    receiver = asyncio.create_task(_wait_disconnect(websocket))
    getter: asyncio.Task | None = None
    try:
        while True:
            if getter is None:
                getter = asyncio.create_task(subscriber.get())
            done, _ = await asyncio.wait(
                {getter, receiver}, timeout=ticker.remaining(), return_when=asyncio.FIRST_COMPLETED
            )

            if receiver in done:
                return 0

            if ticker.due():
                await asyncio.wait_for(websocket.send_json({"type": "ping"}), write_timeout)
            if getter not in done:
                continue

            event = getter.result()
            getter = None
            if event is None:
                final = subscriber.final
                if final is not None and final.is_error:
                    await asyncio.wait_for(websocket.send_json(final.envelope()), write_timeout)
                if final is not None and final.reason in FAILURE_REASONS:
                    return CLOSE_ERROR
                return CLOSE_NORMAL

            await asyncio.wait_for(websocket.send_json(event.envelope()), write_timeout)

    except TimeoutError:
        logger.warning(
            "WebSocket write deadline exceeded",
            extra={"subscription_key": str(subscriber.key)},
        )
        return CLOSE_ERROR
    except (WebSocketDisconnect, RuntimeError):
        return 0
    finally:
        receiver.cancel()
        if getter is not None:
            getter.cancel()


async def serve_stream(websocket: WebSocket, resolve_key: KeyResolver) -> None:
    """Authenticate, resolve the key, subscribe and stream until either side ends."""
    set_correlation_id(str(uuid.uuid4()))
    tenant = await _authenticate(websocket)
    if tenant is None:
        return

    await websocket.accept()
    started = time.monotonic()
    metrics.record_websocket_connection_start()
    container = _container(websocket)

    try:
        try:
            key = await resolve_key(tenant)
        except (DomainError, ValueError) as e:
            message = getattr(e, "message", None) or str(e)
            kind = error_kind(e) if isinstance(e, DomainError) else ErrorKind.VALIDATION
            await websocket.send_json({"type": "error", "error": message})
            await _close(websocket, CLOSE_POLICY if kind in _CLIENT_ERROR_KINDS else CLOSE_ERROR)
            return

        logger.info(
            "WebSocket stream opened",
            extra={"tenant_id": tenant.tenant_id, "subscription_key": str(key)},
        )

        async with container.multiplexer.subscription(key) as subscriber:
            code = await stream_subscription(websocket, subscriber)

        if code:
            await _close(websocket, code)
        logger.info(
            "WebSocket stream closed",
            extra={"subscription_key": str(key), "close_code": code, "dropped": subscriber.dropped},
        )
    except Exception:
        logger.exception("WebSocket stream crashed")
        await _close(websocket, CLOSE_ERROR)
    finally:
        metrics.record_websocket_connection_end(time.monotonic() - started)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.websocket("/ws/traffic/{interface}")
async def interface_traffic(websocket: WebSocket, interface: str) -> None:
    async def resolve(tenant: TenantContext) -> SubscriptionKey:
        device = await _container(websocket).devices.get_active(tenant.tenant_id)
        return SubscriptionKey.traffic(device.id, interface)

    await serve_stream(websocket, resolve)


@router.websocket("/ws/customers/{customer_id}/traffic")
async def customer_traffic(websocket: WebSocket, customer_id: str) -> None:
    async def resolve(tenant: TenantContext) -> SubscriptionKey:
        return await _container(websocket).customers.traffic_key(tenant.tenant_id, customer_id)

    await serve_stream(websocket, resolve)


@router.websocket("/ws/logs")
async def log_tail(websocket: WebSocket) -> None:
    async def resolve(tenant: TenantContext) -> SubscriptionKey:
        device = await _container(websocket).devices.get_active(tenant.tenant_id)
        return SubscriptionKey.log(device.id)

    await serve_stream(websocket, resolve)


def _int_param(websocket: WebSocket, name: str) -> int | None:
    value = websocket.query_params.get(name)
    return int(value) if value else None


@router.websocket("/ws/ping/{address}")
async def ping_stream(websocket: WebSocket, address: str) -> None:
    """Continuous ping (finite when ``count`` is given)."""

    async def resolve(tenant: TenantContext) -> SubscriptionKey:
        device = await _container(websocket).devices.get_active(tenant.tenant_id)
        return SubscriptionKey.ping(
            device.id,
            address,
            size=_int_param(websocket, "size"),
            interval=websocket.query_params.get("interval"),
            count=_int_param(websocket, "count"),
        )

    await serve_stream(websocket, resolve)


@router.websocket("/customers/{customer_id}/ping/ws")
async def customer_ping(websocket: WebSocket, customer_id: str) -> None:
    """Three-packet ping of the customer's current IP, then close."""

    async def resolve(tenant: TenantContext) -> SubscriptionKey:
        count = _int_param(websocket, "count") or 3
        return await _container(websocket).customers.ping_key(
            tenant.tenant_id, customer_id, count=count
        )

    await serve_stream(websocket, resolve)


@router.websocket("/ws/ppp/events")
async def ppp_events(websocket: WebSocket) -> None:
    """PPPoE up/down events for the tenant, fed from the event broker.

    Sends ``{"type": "initial", "data": [...]}`` with the router's current
    active list first (empty when the device cannot be reached).
    """
    tenant = await _authenticate(websocket)
    if tenant is None:
        return
    await websocket.accept()
    container = _container(websocket)

    outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=container.settings.subscription_subscriber_queue_capacity)

    async def forward(channel: str) -> None:
        async for payload in container.local_broker.subscribe(channel):
            try:
                outbox.put_nowait(payload)
            except asyncio.QueueFull:
                logger.debug("PPP event dropped for slow client", extra={"channel": channel})

    forwarders = [
        asyncio.create_task(forward(ppp_active_channel(tenant.tenant_id))),
        asyncio.create_task(forward(ppp_inactive_channel(tenant.tenant_id))),
    ]

    write_timeout = container.settings.server_write_timeout
    ticker = _KeepaliveTicker(container.settings.subscription_keepalive_interval)
    receiver: asyncio.Task | None = None
    getter: asyncio.Task | None = None
    try:
        try:
            initial = [
                s.model_dump(by_alias=True)
                for s in await container.ppp.list_active(tenant.tenant_id)
            ]
        except DomainError as e:
            logger.info("No initial PPP active list", extra={"error": e.message})
            initial = []
        except RouterOSError as e:
            logger.warning("Initial PPP active list failed", extra={"error": str(e)})
            initial = []
        await asyncio.wait_for(websocket.send_json({"type": "initial", "data": initial}), write_timeout)

        receiver = asyncio.create_task(_wait_disconnect(websocket))
        while True:
            if getter is None:
                getter = asyncio.create_task(outbox.get())
            done, _ = await asyncio.wait(
                {getter, receiver},
                timeout=ticker.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if receiver in done:
                return
            if ticker.due():
                await asyncio.wait_for(websocket.send_json({"type": "ping"}), write_timeout)
            if getter not in done:
                continue
            payload = getter.result()
            getter = None
            await asyncio.wait_for(
                websocket.send_text(f'{{"type":"update","data":{payload}}}'), write_timeout
            )
    except TimeoutError:
        logger.warning("WebSocket write deadline exceeded", extra={"tenant_id": tenant.tenant_id})
        await _close(websocket, CLOSE_ERROR)
    except (WebSocketDisconnect, RuntimeError):
        return
    finally:
        if receiver is not None:
            receiver.cancel()
        if getter is not None:
            getter.cancel()
        for task in forwarders:
            task.cancel()


__all__ = ["router", "serve_stream", "stream_subscription"]
