"""Tests for the WebSocket pumps: keepalive cadence and write deadlines."""

import asyncio
from types import SimpleNamespace

from starlette.websockets import WebSocketState

from mikrops.api.websocket import CLOSE_ERROR, CLOSE_NORMAL, ppp_events, stream_subscription
from mikrops.infra.broker import InProcessEventBroker
from mikrops.streams.kinds import CHANNEL_LOGS, FinalEvent, LogEntry, StreamEvent, SubscriptionKey
from mikrops.streams.multiplexer import Subscriber

KEY = SubscriptionKey.log("dev-1")


class ScriptedSocket:
    """Just enough of starlette's WebSocket for the pumps."""

    def __init__(self, container, *, stall_sends=False):
        self.app = SimpleNamespace(state=SimpleNamespace(container=container))
        self.query_params = {"token": "t"}
        self.application_state = WebSocketState.CONNECTED
        self.sent = []
        self.close_code = None
        self.stall_sends = stall_sends
        self._gone = asyncio.Event()

    async def accept(self):
        pass

    async def _send(self, message):
        if self.stall_sends:
            await asyncio.Event().wait()
        self.sent.append(message)

    async def send_json(self, data):
        await self._send(data)

    async def send_text(self, text):
        await self._send(text)

    async def receive(self):
        await self._gone.wait()
        return {"type": "websocket.disconnect"}

    async def close(self, code=1000):
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def disconnect(self):
        self._gone.set()


def _container(keepalive, write_timeout=1.0, active=()):
    async def list_active(tenant_id):
        return list(active)

    return SimpleNamespace(
        settings=SimpleNamespace(
            server_write_timeout=write_timeout,
            subscription_keepalive_interval=keepalive,
            subscription_subscriber_queue_capacity=10,
        ),
        validator=SimpleNamespace(validate=lambda token: SimpleNamespace(tenant_id="default")),
        local_broker=InProcessEventBroker(),
        ppp=SimpleNamespace(list_active=list_active),
    )


async def test_keepalive_ticks_even_while_events_flow():
    socket = ScriptedSocket(_container(keepalive=0.05))
    subscriber = Subscriber(KEY)

    async def feed():
        for index in range(30):
            subscriber.offer(StreamEvent(KEY, "update", LogEntry(message=str(index)), CHANNEL_LOGS))
            await asyncio.sleep(0.01)
        subscriber.close(FinalEvent("complete"))

    feeder = asyncio.create_task(feed())
    code = await stream_subscription(socket, subscriber)
    await feeder

    types = [message["type"] for message in socket.sent]
    assert code == CLOSE_NORMAL
    assert types.count("update") == 30
    assert types.count("ping") >= 2


async def test_stalled_client_hits_the_write_deadline():
    socket = ScriptedSocket(_container(keepalive=5.0, write_timeout=0.05), stall_sends=True)
    subscriber = Subscriber(KEY)
    subscriber.offer(StreamEvent(KEY, "update", LogEntry(message="x"), CHANNEL_LOGS))

    assert await stream_subscription(socket, subscriber) == CLOSE_ERROR


async def test_ppp_events_forwards_updates_and_pings():
    container = _container(keepalive=0.05)
    socket = ScriptedSocket(container)
    pump = asyncio.create_task(ppp_events(socket))

    async def published():
        while container.local_broker.subscriber_count("ppp:active:default") == 0:
            await asyncio.sleep(0.005)
        container.local_broker.publish("ppp:active:default", '{"name":"alice"}')

    await asyncio.wait_for(published(), 1)
    await asyncio.sleep(0.15)
    socket.disconnect()
    await asyncio.wait_for(pump, 1)

    assert socket.sent[0] == {"type": "initial", "data": []}
    assert '{"type":"update","data":{"name":"alice"}}' in socket.sent
    assert {"type": "ping"} in socket.sent


async def test_ppp_events_closes_stalled_client():
    socket = ScriptedSocket(_container(keepalive=5.0, write_timeout=0.05), stall_sends=True)

    await asyncio.wait_for(ppp_events(socket), 1)

    assert socket.close_code == CLOSE_ERROR
