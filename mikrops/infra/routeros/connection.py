"""RouterOS API connection (one live control channel per device).

Wraps a blocking ``librouteros`` API session, driven from the event loop with
``asyncio.to_thread``:
- Dial timeout and TLS auto-selection (API-SSL port 8729)
- Plaintext login with fallback to the legacy MD5 challenge
- Linearized ``run`` calls with a bounded backlog
- One reconnect-and-retry on transport loss during ``run``
- Tagged ``listen`` streams that end on ``!done``, ``/cancel`` or transport loss

A listen occupies the connection until it ends; commands issued meanwhile wait
in the backlog. Subscription sessions therefore use dedicated connections
(see :mod:`mikrops.infra.routeros.pool`).

Design principles:
- Never log credentials
- Classify transport loss through :func:`is_transport_lost` only
- ``listen`` is never retried here; restart policy belongs to the session layer
"""

import asyncio
import contextlib
import itertools
import logging
import socket
import ssl
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import librouteros
from librouteros.exceptions import ConnectionClosed, FatalError, LibRouterosError, TrapError
from librouteros.login import token

from mikrops.infra.observability import metrics
from mikrops.infra.routeros.exceptions import (
    DEFAULT_RECONNECT_SIGNATURES,
    RouterOSAuthenticationError,
    RouterOSConnectionError,
    RouterOSError,
    RouterOSFatalError,
    RouterOSQueueFullError,
    RouterOSTimeoutError,
    RouterOSTransportLostError,
    RouterOSTrapError,
    is_transport_lost,
    trap_from_reply,
)
from mikrops.infra.routeros.protocol import (
    REPLY_DONE,
    REPLY_EMPTY,
    REPLY_FATAL,
    REPLY_RE,
    REPLY_TRAP,
    ReplySentence,
    build_command,
    parse_sentence,
)

logger = logging.getLogger(__name__)

API_PORT = 8728
API_SSL_PORT = 8729

# RouterOS trap category for "interrupted" (sent after /cancel)
_TRAP_INTERRUPTED = "2"

# Errors raised by librouteros or the socket underneath it
_TRANSPORT_ERRORS = (LibRouterosError, OSError)


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, TimeoutError) or "timed out" in str(error).lower()


def translate_error(error: BaseException, context: str) -> RouterOSError:
    """Map a librouteros/socket error onto the RouterOS exception hierarchy."""
    message = str(error) or type(error).__name__
    if _is_timeout(error):
        return RouterOSTimeoutError(f"{context}: {message}")
    if isinstance(error, FatalError):
        return RouterOSFatalError(f"loop has ended: {message}")
    if isinstance(error, ConnectionClosed):
        return RouterOSTransportLostError(f"EOF: {message}")
    if isinstance(error, OSError):
        return RouterOSTransportLostError(f"broken pipe: {message}")
    return RouterOSError(message)


@dataclass
class Reply:
    """Completed command reply.

    Attributes:
        re: Attribute maps of every ``!re`` record, in arrival order
        done: Attribute map of the terminating ``!done`` record
    """

    re: list[dict[str, str]] = field(default_factory=list)
    done: dict[str, str] = field(default_factory=dict)


class ListenStream:
    """Async iterator over the ``!re`` records of one tagged listen command.

    Iteration stops when the router sends ``!done`` (``completed`` is set),
    after :meth:`cancel` is acknowledged (``cancelled`` is set), or raises
    :class:`RouterOSTransportLostError` when the transport ends.

    Each record is read by a worker thread. A read interrupted by the
    consumer's cancellation keeps running and is picked up by the next
    ``__anext__``, so two threads never read the socket at once.

    Example:
        stream = await connection.listen("/log/print", {"follow": "yes"})
        try:
            async for record in stream:
                print(record["message"])
        finally:
            await stream.cancel()
    """

    def __init__(self, connection: "RouterOSConnection", api: Any, tag: str, command: str) -> None:
        self.connection = connection
        self.tag = tag
        self.command = command
        self.completed = False
        self.cancelled = False
        self._api = api
        self._finished = False
        self._drained = False
        self._read: asyncio.Future[ReplySentence] | None = None

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "ListenStream":
        return self

    async def __anext__(self) -> dict[str, str]:
        while True:
            if self._finished:
                raise StopAsyncIteration

            if self._read is None:
                self._read = asyncio.ensure_future(
                    asyncio.to_thread(self.connection._read_sentence, self._api)
                )
            try:
                sentence = await asyncio.shield(self._read)
            except _TRANSPORT_ERRORS as e:
                self._read = None
                self._finish()
                if self.cancelled:
                    raise StopAsyncIteration from e
                if self.connection.closed:
                    raise RouterOSTransportLostError("use of closed network connection") from e
                raise translate_error(e, f"Listen {self.command}") from e
            self._read = None

            if sentence.tag != self.tag:
                continue

            if sentence.reply == REPLY_RE:
                return sentence.attributes

            if sentence.reply in (REPLY_DONE, REPLY_EMPTY):
                self.completed = not self.cancelled
                self._drained = True
                self._finish()
                raise StopAsyncIteration

            if sentence.reply == REPLY_TRAP:
                if self.cancelled and sentence.attributes.get("category") == _TRAP_INTERRUPTED:
                    continue
                self._finish()
                raise trap_from_reply(sentence.attributes)

            if sentence.reply == REPLY_FATAL:
                self._finish()
                raise RouterOSFatalError(sentence.attributes.get("message", "fatal"))

    async def cancel(self) -> None:
        """Ask the router to stop the command; safe to call more than once."""
        if self._finished or self.cancelled:
            return
        self.cancelled = True
        words = build_command("/cancel", {"tag": self.tag})
        try:
            await asyncio.to_thread(self._api.protocol.writeSentence, *words)
        except _TRANSPORT_ERRORS:
            # transport already gone: end iteration locally
            self._finish()

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        # a reader still in flight or unread replies would desync the next command
        if not self._drained or (self._read is not None and not self._read.done()):
            self.connection._drop_transport()
        self.connection._listen_finished(self)


class RouterOSConnection:
    """Async client for one RouterOS device.

    Example:
        connection = RouterOSConnection(
            host="192.168.88.1",
            username="admin",
            password="secret",
        )

        reply = await connection.run("/system/resource/print")
        print(reply.re[0]["uptime"])

        await connection.close()
    """

    def __init__(
        self,
        host: str,
        port: int = API_PORT,
        username: str = "admin",
        password: str = "",
        *,
        timeout_seconds: float = 10.0,
        use_tls: bool | None = None,
        tls_port: int = API_SSL_PORT,
        verify_tls: bool = True,
        queue_size: int = 100,
        reconnect_signatures: Sequence[str] = DEFAULT_RECONNECT_SIGNATURES,
        device_id: str | None = None,
    ) -> None:
        """Initialize RouterOS connection (does not dial).

        Args:
            host: RouterOS hostname or IP
            port: API port (8728 plain, 8729 TLS)
            username: RouterOS API user
            password: RouterOS API password
            timeout_seconds: Dial and reply timeout
            use_tls: Force TLS on/off; None selects TLS when port == tls_port
            tls_port: Port that implies TLS
            verify_tls: Verify the router certificate
            queue_size: Maximum number of callers waiting in ``run``
            reconnect_signatures: Error substrings classified as transport loss
            device_id: Device identifier used for logs and metrics
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout_seconds = timeout_seconds
        self.tls_port = tls_port
        self.verify_tls = verify_tls
        self.queue_size = queue_size
        self.reconnect_signatures = tuple(reconnect_signatures)
        self.device_id = device_id or f"{host}:{port}"
        self._use_tls = use_tls

        self._api: Any | None = None
        self._sock: socket.socket | None = None
        self._stream: ListenStream | None = None
        self._tags = itertools.count(1)

        self._command_lock = asyncio.Lock()
        self._reconnect_lock = asyncio.Lock()
        self._waiting = 0
        self._closed = False

    @property
    def use_tls(self) -> bool:
        if self._use_tls is not None:
            return self._use_tls
        return self.port == self.tls_port

    @property
    def is_connected(self) -> bool:
        return self._api is not None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Blocking side (runs in worker threads)
    # ------------------------------------------------------------------

    def _wrap_socket(self, sock: socket.socket) -> socket.socket:
        if self.use_tls:
            context = ssl.create_default_context()
            if not self.verify_tls:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            sock = context.wrap_socket(sock, server_hostname=self.host)
        self._sock = sock
        return sock

    def _login(self, api: Any, username: str, password: str) -> None:
        """Post-6.43 plaintext login; pre-6.43 routers answer with an MD5 challenge."""
        reply = self._exchange(api, "/login", {"name": username, "password": password})
        if reply.done.get("ret"):
            token(api=api, username=username, password=password)

    def _open_blocking(self) -> Any:
        try:
            return librouteros.connect(
                self.host,
                self.username,
                self.password,
                port=self.port,
                timeout=self.timeout_seconds,
                encoding="utf-8",
                ssl_wrapper=self._wrap_socket,
                login_method=self._login,
            )
        except BaseException:
            sock, self._sock = self._sock, None
            if sock is not None:
                sock.close()
            raise

    def _read_sentence(self, api: Any) -> ReplySentence:
        reply_word, words = api.protocol.readSentence()
        return parse_sentence([reply_word, *words])

    def _exchange(
        self,
        api: Any,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> Reply:
        tag = str(next(self._tags))
        api.protocol.writeSentence(*build_command(command, args, query, tag=tag))

        reply = Reply()
        trap: RouterOSTrapError | None = None
        while True:
            sentence = self._read_sentence(api)
            if sentence.tag != tag:
                # late replies of a cancelled listen
                continue
            if sentence.reply == REPLY_RE:
                reply.re.append(sentence.attributes)
            elif sentence.reply == REPLY_TRAP:
                trap = trap or trap_from_reply(sentence.attributes)
            elif sentence.reply in (REPLY_DONE, REPLY_EMPTY):
                if trap is not None:
                    raise trap
                reply.done = sentence.attributes
                return reply

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Dial and log in if not already connected.

        Raises:
            RouterOSTimeoutError: Dial timed out
            RouterOSConnectionError: TCP/TLS connection failed
            RouterOSAuthenticationError: Login rejected
        """
        if self._closed:
            raise RouterOSTransportLostError("use of closed network connection")
        if self.is_connected:
            return
        async with self._reconnect_lock:
            if not self.is_connected:
                await self._dial()

    async def reconnect(self) -> None:
        """Drop the current transport and dial again."""
        if self._closed:
            raise RouterOSTransportLostError("use of closed network connection")
        async with self._reconnect_lock:
            self._drop_transport()
            await self._dial()
        metrics.record_routeros_reconnect(self.device_id)
        logger.info(
            "Reconnected to RouterOS device",
            extra={"device_id": self.device_id, "host": self.host, "port": self.port},
        )

    async def close(self) -> None:
        """Release the transport. Idempotent; in-flight listens terminate."""
        if self._closed:
            return
        self._closed = True
        self._drop_transport()
        logger.debug("Closed RouterOS connection", extra={"device_id": self.device_id})

    async def _dial(self) -> None:
        self._tags = itertools.count(1)
        try:
            api = await asyncio.to_thread(self._open_blocking)
        except RouterOSTrapError as e:
            raise RouterOSAuthenticationError(f"Login rejected: {e.message}") from e
        except TrapError as e:
            raise RouterOSAuthenticationError(f"Login rejected: {e}") from e
        except _TRANSPORT_ERRORS as e:
            if _is_timeout(e):
                raise RouterOSTimeoutError(
                    f"Dial timeout after {self.timeout_seconds}s: {self.host}:{self.port}"
                ) from e
            raise RouterOSConnectionError(
                f"Failed to connect to RouterOS {self.host}:{self.port}: {e}"
            ) from e

        self._api = api
        if self._closed:
            self._drop_transport()
            raise RouterOSTransportLostError("use of closed network connection")

        logger.debug(
            "Connected to RouterOS device",
            extra={"device_id": self.device_id, "tls": self.use_tls},
        )

    def _drop_transport(self) -> None:
        """Shut the socket down so a blocked reader thread wakes up, then close."""
        api, sock = self._api, self._sock
        self._api = None
        self._sock = None
        if sock is not None:
            with contextlib.suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
        if api is not None:
            with contextlib.suppress(*_TRANSPORT_ERRORS):
                api.close()

    def _set_timeout(self, timeout: float | None) -> None:
        if self._sock is not None:
            with contextlib.suppress(OSError):
                self._sock.settimeout(timeout)

    def _listen_finished(self, stream: ListenStream) -> None:
        if self._stream is stream:
            self._stream = None
            self._command_lock.release()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _request(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> Reply:
        api = self._api
        if self._closed or api is None:
            raise RouterOSTransportLostError("use of closed network connection")
        self._set_timeout(self.timeout_seconds)
        try:
            return await asyncio.to_thread(self._exchange, api, command, args, query)
        except _TRANSPORT_ERRORS as e:
            # a half-read reply leaves the session unusable
            self._drop_transport()
            raise translate_error(
                e, f"Reply timeout after {self.timeout_seconds}s: {command}"
            ) from e

    async def run(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> Reply:
        """Run one command and wait for its terminal reply.

        Concurrent callers are linearized in FIFO order. On transport loss the
        connection is re-dialed once and the command retried once; if the retry
        fails the original error is raised.

        Args:
            command: Command path, e.g. ``/ppp/secret/print``
            args: Attribute words
            query: Query words

        Returns:
            Completed reply

        Raises:
            RouterOSQueueFullError: Backlog exceeded ``queue_size``
            RouterOSTrapError: Router returned a trap
            RouterOSTransportLostError: Transport lost and retry failed
        """
        if self._closed:
            raise RouterOSTransportLostError("use of closed network connection")
        if self._waiting >= self.queue_size:
            raise RouterOSQueueFullError(
                f"Command backlog full ({self.queue_size}) for device {self.device_id}"
            )

        self._waiting += 1
        start = time.monotonic()
        status = "success"
        try:
            async with self._command_lock:
                await self.connect()
                try:
                    return await self._request(command, args, query)
                except RouterOSError as original:
                    if self._closed or not is_transport_lost(original, self.reconnect_signatures):
                        raise

                    logger.warning(
                        "Transport lost during command, reconnecting once",
                        extra={"device_id": self.device_id, "command": command, "error": str(original)},
                    )
                    try:
                        await self.reconnect()
                        return await self._request(command, args, query)
                    except RouterOSError as retry_error:
                        raise original from retry_error
        except RouterOSError:
            status = "error"
            raise
        finally:
            self._waiting -= 1
            metrics.record_routeros_command(
                device_id=self.device_id,
                command=command,
                status=status,
                duration=time.monotonic() - start,
            )

    async def listen(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
    ) -> ListenStream:
        """Start a long-running command and return its record stream.

        The connection stays reserved for the stream until it finishes. Not
        retried on failure; the caller decides whether to reconnect.
        """
        if self._closed:
            raise RouterOSTransportLostError("use of closed network connection")

        await self._command_lock.acquire()
        try:
            await self.connect()
            api = self._api
            tag = str(next(self._tags))
            # listens may stay silent for long stretches (log follow)
            self._set_timeout(None)
            await asyncio.to_thread(
                api.protocol.writeSentence, *build_command(command, args, tag=tag)
            )
        except _TRANSPORT_ERRORS as e:
            self._command_lock.release()
            self._drop_transport()
            raise translate_error(e, f"Listen {command}") from e
        except BaseException:
            self._command_lock.release()
            raise

        stream = ListenStream(self, api, tag, command)
        self._stream = stream
        logger.debug(
            "Started listen command",
            extra={"device_id": self.device_id, "command": command, "tag": tag},
        )
        return stream

    async def __aenter__(self) -> "RouterOSConnection":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
