"""Domain-specific exceptions.

Domain exceptions represent business rule violations and are separate from
infrastructure (RouterOS client) errors. Every error carries a ``kind`` so
callers and the HTTP boundary branch on the kind, never on message text.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Error taxonomy shared by the infrastructure and domain layers."""

    TRANSPORT = "transport"
    TRANSPORT_LOST = "transport_lost"
    TIMEOUT = "timeout"
    PROTOCOL = "protocol"
    NOT_FOUND = "not_found"
    DUPLICATE_RESOURCE = "duplicate_resource"
    NO_OBJECT_ID = "no-object-id"
    QUEUE_FULL = "queue_full"
    VALIDATION = "validation"
    NO_ACTIVE_DEVICE = "no_active_device"
    AUTH = "auth"
    CONFIG = "config"
    MAX_RESTARTS_EXCEEDED = "max_restarts_exceeded"
    SESSION_FAILED = "session_failed"
    INTERNAL = "internal"


class DomainError(Exception):
    """Base exception for domain layer errors.

    Domain errors represent violations of business rules or constraints
    that are enforced at the service layer.
    """

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, context: dict | None = None) -> None:
        """Initialize domain error.

        Args:
            message: Human-readable error message
            context: Additional context about the error (device_id, key, ...)
        """
        self.message = message
        self.context = context or {}
        super().__init__(message)


class NotFoundError(DomainError):
    """Raised when a database row or RouterOS object does not exist."""

    kind = ErrorKind.NOT_FOUND


class DuplicateResourceError(DomainError):
    """Raised when a resource already exists (in the database or on the router)."""

    kind = ErrorKind.DUPLICATE_RESOURCE


class ValidationError(DomainError):
    kind = ErrorKind.VALIDATION


class NoActiveDeviceError(DomainError):
    """Raised when a tenant has no active device to talk to."""

    kind = ErrorKind.NO_ACTIVE_DEVICE


class AuthError(DomainError):
    kind = ErrorKind.AUTH


class ConfigError(DomainError):
    kind = ErrorKind.CONFIG


class MaxRestartsExceeded(DomainError):
    """Raised when a subscription session gives up after its restart budget."""

    kind = ErrorKind.MAX_RESTARTS_EXCEEDED


class SessionFailed(DomainError):
    """Raised when a subscription session ends with a non-recoverable error."""

    kind = ErrorKind.SESSION_FAILED


def error_kind(exc: BaseException) -> ErrorKind:
    """Return the kind of any domain or RouterOS error (INTERNAL otherwise)."""
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(kind, str):
        try:
            return ErrorKind(kind)
        except ValueError:
            return ErrorKind.INTERNAL
    return ErrorKind.INTERNAL
