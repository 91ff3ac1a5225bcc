"""Per-device RouterOS connection pool.

Command callers borrow one shared connection per device; it is dialed lazily on
first borrow and closed when the last borrower releases it. Subscription
sessions get a dedicated connection of their own so a long-running listen never
competes with the serialized command path.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mikrops.infra.routeros.connection import API_SSL_PORT, RouterOSConnection
from mikrops.infra.routeros.exceptions import DEFAULT_RECONNECT_SIGNATURES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceEndpoint:
    """Everything needed to dial one device (secret already decrypted)."""

    device_id: str
    host: str
    port: int
    username: str
    password: str
    use_tls: bool | None = None
    timeout_seconds: float = 10.0
    queue_size: int = 100

    def __repr__(self) -> str:
        return f"DeviceEndpoint(device_id={self.device_id!r}, host={self.host!r}, port={self.port})"


ConnectionFactory = Callable[..., RouterOSConnection]


@dataclass
class _PooledConnection:
    connection: RouterOSConnection
    refcount: int = 0


class ConnectionPool:
    """Owns every RouterOS connection opened by the process."""

    def __init__(
        self,
        *,
        tls_port: int = API_SSL_PORT,
        verify_tls: bool = True,
        reconnect_signatures: Sequence[str] = DEFAULT_RECONNECT_SIGNATURES,
        connection_factory: ConnectionFactory = RouterOSConnection,
    ) -> None:
        self.tls_port = tls_port
        self.verify_tls = verify_tls
        self.reconnect_signatures = tuple(reconnect_signatures)
        self._factory = connection_factory
        self._shared: dict[str, _PooledConnection] = {}
        self._dedicated: set[RouterOSConnection] = set()
        self._lock = asyncio.Lock()

    def create_connection(self, endpoint: DeviceEndpoint) -> RouterOSConnection:
        return self._factory(
            endpoint.host,
            endpoint.port,
            endpoint.username,
            endpoint.password,
            timeout_seconds=endpoint.timeout_seconds,
            use_tls=endpoint.use_tls,
            tls_port=self.tls_port,
            verify_tls=self.verify_tls,
            queue_size=endpoint.queue_size,
            reconnect_signatures=self.reconnect_signatures,
            device_id=endpoint.device_id,
        )

    @asynccontextmanager
    async def borrow(self, endpoint: DeviceEndpoint) -> AsyncIterator[RouterOSConnection]:
        """Borrow the shared command connection for a device."""
        async with self._lock:
            entry = self._shared.get(endpoint.device_id)
            if entry is None or entry.connection.closed:
                entry = _PooledConnection(self.create_connection(endpoint))
                self._shared[endpoint.device_id] = entry
            entry.refcount += 1

        try:
            yield entry.connection
        finally:
            async with self._lock:
                entry.refcount -= 1
                release = entry.refcount <= 0 and self._shared.get(endpoint.device_id) is entry
                if release:
                    del self._shared[endpoint.device_id]
            if release:
                await entry.connection.close()

    async def open_dedicated(self, endpoint: DeviceEndpoint) -> RouterOSConnection:
        """Dial a fresh connection owned by the caller (released via :meth:`release`)."""
        connection = self.create_connection(endpoint)
        self._dedicated.add(connection)
        try:
            await connection.connect()
        except BaseException:
            self._dedicated.discard(connection)
            await connection.close()
            raise
        return connection

    async def release(self, connection: RouterOSConnection) -> None:
        self._dedicated.discard(connection)
        await connection.close()

    async def close_device(self, device_id: str) -> None:
        """Close the shared and dedicated connections of one device."""
        async with self._lock:
            entry = self._shared.pop(device_id, None)
        victims = [c for c in self._dedicated if c.device_id == device_id]
        if entry is not None:
            victims.append(entry.connection)
        for connection in victims:
            self._dedicated.discard(connection)
            await connection.close()

    async def close_all(self) -> None:
        async with self._lock:
            shared = [entry.connection for entry in self._shared.values()]
            self._shared.clear()
        dedicated = list(self._dedicated)
        self._dedicated.clear()

        for connection in shared + dedicated:
            await connection.close()

        logger.info(
            "Closed RouterOS connection pool",
            extra={"shared": len(shared), "dedicated": len(dedicated)},
        )

    def stats(self) -> dict[str, int]:
        return {
            "shared_connections": len(self._shared),
            "dedicated_connections": len(self._dedicated),
        }


EndpointResolver = Callable[[str], Awaitable[DeviceEndpoint]]


class DedicatedConnectionProvider:
    """Connection source for subscription sessions.

    Resolves the device endpoint on every open so a session reopened after a
    restart picks up changed credentials.
    """

    def __init__(self, pool: ConnectionPool, resolve_endpoint: EndpointResolver) -> None:
        self.pool = pool
        self.resolve_endpoint = resolve_endpoint

    async def open(self, device_id: str) -> RouterOSConnection:
        endpoint = await self.resolve_endpoint(device_id)
        return await self.pool.open_dedicated(endpoint)

    async def release(self, connection: RouterOSConnection) -> None:
        await self.pool.release(connection)
