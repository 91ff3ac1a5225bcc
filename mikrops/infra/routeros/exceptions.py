"""RouterOS client exceptions.

Strongly-typed exceptions for the RouterOS API connection and command executor.
Maps low-level transport errors and router traps to domain-level exceptions.

Exception hierarchy:
- RouterOSError (base)
  - RouterOSConnectionError (dial/IO)
    - RouterOSTransportLostError (reconnect signature matched)
    - RouterOSTimeoutError
  - RouterOSAuthenticationError (login rejected)
  - RouterOSTrapError (!trap reply, protocol error)
    - RouterOSNotFoundError (no such item)
    - RouterOSDuplicateError (already have / already exists)
  - RouterOSFatalError (!fatal reply, router closes the session)
  - RouterOSNoObjectIdError (add without ret/after)
  - RouterOSQueueFullError (command backlog exceeded)
"""

from collections.abc import Iterable

DEFAULT_RECONNECT_SIGNATURES: tuple[str, ...] = (
    "loop has ended",
    "closed network connection",
    "broken pipe",
    "use of closed network connection",
    "EOF",
)


class RouterOSError(Exception):
    """Base exception for all RouterOS client errors."""

    kind = "protocol"


class RouterOSConnectionError(RouterOSError):
    """Base exception for connection/network failures."""

    kind = "transport"


class RouterOSTransportLostError(RouterOSConnectionError):
    """Raised when an established transport ends or can no longer be written."""

    kind = "transport_lost"


class RouterOSTimeoutError(RouterOSConnectionError):
    """Raised when dialing or waiting for a reply times out."""

    kind = "timeout"


class RouterOSAuthenticationError(RouterOSError):
    """Raised when the router rejects the login sentence."""

    kind = "auth"


class RouterOSTrapError(RouterOSError):
    """Raised for a !trap reply.

    Attributes:
        message: Trap message reported by the router
        category: Trap category (RouterOS numeric category, may be empty)
    """

    kind = "protocol"

    def __init__(self, message: str, category: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.category = category


class RouterOSNotFoundError(RouterOSTrapError):
    """Raised when the router reports that the referenced item does not exist."""

    kind = "not_found"


class RouterOSDuplicateError(RouterOSTrapError):
    """Raised when the router refuses to create an item that already exists."""

    kind = "duplicate_resource"


class RouterOSFatalError(RouterOSConnectionError):
    """Raised for a !fatal reply; the router closes the connection after it."""

    kind = "transport_lost"


class RouterOSNoObjectIdError(RouterOSError):
    """Raised when an add command completes without returning an object id."""

    kind = "no-object-id"


class RouterOSQueueFullError(RouterOSError):
    """Raised when the per-device command backlog is exhausted."""

    kind = "queue_full"


def is_transport_lost(
    exc: BaseException,
    signatures: Iterable[str] = DEFAULT_RECONNECT_SIGNATURES,
) -> bool:
    """Classify an error as a recoverable transport loss.

    Args:
        exc: Error raised by a connection operation
        signatures: Substrings that mark an error message as transport loss

    Returns:
        True if the connection should be re-dialed
    """
    if isinstance(exc, (RouterOSTransportLostError, RouterOSFatalError)):
        return True
    if isinstance(exc, RouterOSTrapError):
        return False

    message = str(exc).lower()
    return any(sig.lower() in message for sig in signatures if sig)


_NOT_FOUND_MARKERS = ("no such item", "not found")
_DUPLICATE_MARKERS = ("already have", "already exists", "entry already exists")


def trap_from_reply(attributes: dict[str, str]) -> RouterOSTrapError:
    """Build the matching trap exception for a !trap attribute map."""
    message = attributes.get("message", "unknown trap")
    category = attributes.get("category")
    lowered = message.lower()

    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return RouterOSNotFoundError(message, category)
    if any(marker in lowered for marker in _DUPLICATE_MARKERS):
        return RouterOSDuplicateError(message, category)
    return RouterOSTrapError(message, category)
