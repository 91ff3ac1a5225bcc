"""In-memory RouterOS doubles shared by the unit tests.

``FakeRouter`` keeps menus (``/ppp/secret``, ``/ppp/profile``, ...) as dicts
of id -> attributes and answers print/add/set/remove like a real device.
``FakeConnection`` is a drop-in for ``RouterOSConnection`` created through
``FakeRouter.factory`` so it can be passed as a pool ``connection_factory``.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Mapping
from typing import Any

from mikrops.infra.routeros.connection import Reply
from mikrops.infra.routeros.exceptions import (
    RouterOSDuplicateError,
    RouterOSNotFoundError,
    RouterOSTransportLostError,
)

DONE = object()

TENANT = "default"


class FakeListenStream:
    """Scripted listen stream: feed records, exceptions or DONE."""

    def __init__(self, command: str, args: Mapping[str, object] | None) -> None:
        self.command = command
        self.args = dict(args or {})
        self.completed = False
        self.cancelled = False
        self._finished = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, *items: Any) -> None:
        for item in items:
            self._queue.put_nowait(item)

    def __aiter__(self) -> FakeListenStream:
        return self

    async def __anext__(self) -> dict[str, str]:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is DONE:
            self.completed = not self.cancelled
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._finished = True
            raise item
        return item

    async def cancel(self) -> None:
        if self._finished or self.cancelled:
            return
        self.cancelled = True
        self._finished = True
        self._queue.put_nowait(DONE)


class FakeRouter:
    """Minimal RouterOS device state."""

    def __init__(self) -> None:
        self.menus: dict[str, dict[str, dict[str, str]]] = {}
        self.commands: list[tuple[str, dict[str, Any]]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.resource = {"uptime": "1d2h", "version": "7.14", "board-name": "CCR2004"}
        self.ping_records: list[dict[str, str]] = []
        self.streams: list[FakeListenStream] = []
        self.listen_calls: list[str] = []
        # items fed into every new listen stream of a command
        self.listen_scripts: dict[str, list[Any]] = {}
        self.connections: list[FakeConnection] = []
        self.dial_failures: list[BaseException] = []
        self._ids = itertools.count(1)

    def factory(self, host: str, port: int = 8728, username: str = "admin", password: str = "", **kwargs: Any) -> FakeConnection:
        connection = FakeConnection(self, host, port, username, password, device_id=kwargs.get("device_id"))
        self.connections.append(connection)
        return connection

    def fail(self, command: str, error: BaseException) -> None:
        """Make the next ``command`` raise ``error``."""
        self.failures.setdefault(command, []).append(error)

    def items(self, menu: str) -> list[dict[str, str]]:
        return [{".id": object_id, **attrs} for object_id, attrs in self.menus.get(menu, {}).items()]

    def execute(self, command: str, args: Mapping[str, object] | None, query: Mapping[str, object] | None) -> Reply:
        args = {k: str(v) for k, v in (args or {}).items() if v is not None}
        self.commands.append((command, args))

        pending = self.failures.get(command)
        if pending:
            raise pending.pop(0)

        if command == "/system/resource/print":
            return Reply(re=[dict(self.resource)])
        if command == "/ping":
            return Reply(re=[dict(r) for r in self.ping_records])

        menu, _, action = command.rpartition("/")
        table = self.menus.setdefault(menu, {})

        if action == "print":
            rows = self.items(menu)
            for key, value in (query or {}).items():
                rows = [r for r in rows if r.get(key) == str(value)]
            return Reply(re=rows)

        if action == "add":
            if "name" in args and any(a.get("name") == args["name"] for a in table.values()):
                raise RouterOSDuplicateError("failure: secret with the same name already exists")
            object_id = f"*{next(self._ids):X}"
            table[object_id] = {k: v for k, v in args.items() if not k.startswith(".")}
            return Reply(done={"ret": object_id})

        if action == "set":
            object_id = args.pop(".id")
            if object_id not in table:
                raise RouterOSNotFoundError("no such item")
            table[object_id].update(args)
            return Reply()

        if action == "remove":
            object_id = args[".id"]
            if table.pop(object_id, None) is None:
                raise RouterOSNotFoundError("no such item")
            return Reply()

        raise RouterOSNotFoundError(f"no such command {command}")


class FakeConnection:
    """RouterOSConnection stand-in backed by a FakeRouter."""

    def __init__(
        self,
        router: FakeRouter,
        host: str,
        port: int,
        username: str,
        password: str,
        device_id: str | None = None,
    ) -> None:
        self.router = router
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.device_id = device_id or f"{host}:{port}"
        self.connected = False
        self.closed = False
        self.reconnects = 0

    async def connect(self) -> None:
        if self.router.dial_failures:
            raise self.router.dial_failures.pop(0)
        self.connected = True

    async def reconnect(self) -> None:
        self.reconnects += 1
        self.connected = True

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    async def run(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> Reply:
        if self.closed:
            raise RouterOSTransportLostError("use of closed network connection")
        await self.connect()
        return self.router.execute(command, args, query)

    async def listen(self, command: str, args: Mapping[str, object] | None = None) -> FakeListenStream:
        if self.closed:
            raise RouterOSTransportLostError("use of closed network connection")
        self.router.listen_calls.append(command)
        pending = self.router.failures.get(command)
        if pending:
            raise pending.pop(0)
        stream = FakeListenStream(command, args)
        stream.feed(*self.router.listen_scripts.get(command, ()))
        self.router.streams.append(stream)
        return stream


class FakeProvider:
    """ConnectionProvider handing out FakeConnections for subscription sessions."""

    def __init__(self, router: FakeRouter | None = None) -> None:
        self.router = router or FakeRouter()
        self.opened: list[FakeConnection] = []
        self.released: list[FakeConnection] = []

    async def open(self, device_id: str) -> FakeConnection:
        connection = self.router.factory("10.0.0.1", device_id=device_id)
        await connection.connect()
        self.opened.append(connection)
        return connection

    async def release(self, connection: FakeConnection) -> None:
        self.released.append(connection)
        await connection.close()


async def wait_until(predicate: Any, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true (event-loop friendly)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
