"""RouterOS integration module.

Provides the asyncio client for MikroTik RouterOS devices over the binary API:
- protocol: sentence/word codec
- connection: one live control channel per device (run/listen/close)
- executor: request/reply helpers (print/add/set/remove)
- pool: per-device connection ownership
- exceptions: strongly-typed error handling and the transport-lost predicate
"""

from mikrops.infra.routeros.connection import ListenStream, Reply, RouterOSConnection
from mikrops.infra.routeros.exceptions import (
    DEFAULT_RECONNECT_SIGNATURES,
    RouterOSAuthenticationError,
    RouterOSConnectionError,
    RouterOSDuplicateError,
    RouterOSError,
    RouterOSFatalError,
    RouterOSNoObjectIdError,
    RouterOSNotFoundError,
    RouterOSQueueFullError,
    RouterOSTimeoutError,
    RouterOSTransportLostError,
    RouterOSTrapError,
    is_transport_lost,
)
from mikrops.infra.routeros.executor import CommandExecutor
from mikrops.infra.routeros.pool import (
    ConnectionPool,
    DedicatedConnectionProvider,
    DeviceEndpoint,
)

__all__ = [
    # Clients
    "RouterOSConnection",
    "ListenStream",
    "Reply",
    "CommandExecutor",
    "ConnectionPool",
    "DedicatedConnectionProvider",
    "DeviceEndpoint",
    # Exceptions
    "DEFAULT_RECONNECT_SIGNATURES",
    "RouterOSError",
    "RouterOSConnectionError",
    "RouterOSTransportLostError",
    "RouterOSTimeoutError",
    "RouterOSAuthenticationError",
    "RouterOSTrapError",
    "RouterOSNotFoundError",
    "RouterOSDuplicateError",
    "RouterOSFatalError",
    "RouterOSNoObjectIdError",
    "RouterOSQueueFullError",
    "is_transport_lost",
]
