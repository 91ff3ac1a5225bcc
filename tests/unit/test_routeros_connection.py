"""Tests for RouterOSConnection against a scripted RouterOS API server on localhost."""

import asyncio

import pytest
from librouteros.exceptions import ConnectionClosed, FatalError

from mikrops.infra.routeros.connection import RouterOSConnection, translate_error
from mikrops.infra.routeros.exceptions import (
    RouterOSAuthenticationError,
    RouterOSConnectionError,
    RouterOSDuplicateError,
    RouterOSFatalError,
    RouterOSQueueFullError,
    RouterOSTimeoutError,
    RouterOSTransportLostError,
    is_transport_lost,
)
from mikrops.infra.routeros.protocol import parse_sentence

PASSWORD = "secret"


def _encode_length(length: int) -> bytes:
    if length < 0x80:
        return length.to_bytes(1, "big")
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def _encode_sentence(words: list[str]) -> bytes:
    data = b""
    for word in words:
        raw = word.encode("utf-8")
        data += _encode_length(len(raw)) + raw
    return data + b"\x00"


async def _read_length(reader: asyncio.StreamReader) -> int:
    first = (await reader.readexactly(1))[0]
    if first < 0x80:
        return first
    if first < 0xC0:
        extra, mask = 1, 0x3F
    elif first < 0xE0:
        extra, mask = 2, 0x1F
    elif first < 0xF0:
        extra, mask = 3, 0x0F
    else:
        return int.from_bytes(await reader.readexactly(4), "big")
    rest = await reader.readexactly(extra)
    return int.from_bytes(bytes([first & mask]) + rest, "big")


async def _read_sentence(reader: asyncio.StreamReader) -> list[str]:
    words = []
    while True:
        length = await _read_length(reader)
        if length == 0:
            return words
        words.append((await reader.readexactly(length)).decode("utf-8"))


class ScriptedRouter:
    """Speaks just enough of the RouterOS API for the connection tests."""

    def __init__(self) -> None:
        self.server: asyncio.AbstractServer | None = None
        self.port = 0
        self.logins = 0
        self.received: list[str] = []
        self.drop_once: set[str] = set()
        self.release_slow = asyncio.Event()
        self.listens: dict[str, asyncio.StreamWriter] = {}
        self._tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    def _reply(self, writer: asyncio.StreamWriter, words: list[str], tag: str | None) -> None:
        if tag is not None:
            words = [*words, f".tag={tag}"]
        writer.write(_encode_sentence(words))

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                words = await _read_sentence(reader)
                if not words:
                    continue
                command = words[0]
                sentence = parse_sentence(["!cmd", *words[1:]])
                tag = sentence.tag
                args = sentence.attributes
                self.received.append(command)

                if command in self.drop_once:
                    self.drop_once.discard(command)
                    writer.close()
                    return

                await self._dispatch(command, args, tag, writer)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    async def _dispatch(self, command: str, args: dict, tag: str | None, writer) -> None:
        if command == "/login":
            if args.get("password") == PASSWORD:
                self.logins += 1
                self._reply(writer, ["!done"], tag)
            else:
                self._reply(writer, ["!trap", "=message=invalid user name or password (6)"], tag)
                self._reply(writer, ["!done"], tag)
        elif command == "/system/resource/print":
            self._reply(writer, ["!re", "=uptime=1d", "=version=7.14"], tag)
            self._reply(writer, ["!done"], tag)
        elif command == "/ppp/secret/add":
            if args.get("name") == "taken":
                self._reply(writer, ["!trap", "=message=failure: secret with the same name already exists"], tag)
                self._reply(writer, ["!done"], tag)
            else:
                self._reply(writer, ["!done", "=ret=*1A"], tag)
        elif command == "/slow":
            task = asyncio.create_task(self._slow_reply(writer, tag))
            self._tasks.add(task)
        elif command == "/ping":
            for seq in range(int(args.get("count", "1"))):
                self._reply(writer, ["!re", f"=seq={seq}", "=time=1ms", f"=sent={seq + 1}", f"=received={seq + 1}", "=packet-loss=0"], tag)
            self._reply(writer, ["!done"], tag)
        elif command == "/interface/monitor-traffic":
            self.listens[tag] = writer
            for rate in ("1000", "2000"):
                self._reply(writer, ["!re", f"=name={args['interface']}", f"=rx-bits-per-second={rate}"], tag)
        elif command == "/cancel":
            target = args.get("tag")
            listen = self.listens.pop(target, None)
            if listen is not None:
                self._reply(listen, ["!trap", "=category=2", "=message=interrupted"], target)
                self._reply(listen, ["!done"], target)
            self._reply(writer, ["!done"], tag)
        else:
            self._reply(writer, ["!done"], tag)

    async def _slow_reply(self, writer: asyncio.StreamWriter, tag: str | None) -> None:
        await self.release_slow.wait()
        self._reply(writer, ["!done"], tag)
        await writer.drain()


@pytest.fixture
async def scripted():
    router = ScriptedRouter()
    await router.start()
    yield router
    await router.stop()


@pytest.fixture
async def connection(scripted):
    conn = RouterOSConnection("127.0.0.1", scripted.port, "admin", PASSWORD, timeout_seconds=2.0)
    yield conn
    await conn.close()


async def test_run_logs_in_lazily_and_returns_records(connection, scripted):
    reply = await connection.run("/system/resource/print")

    assert reply.re == [{"uptime": "1d", "version": "7.14"}]
    assert scripted.logins == 1
    assert scripted.received[:2] == ["/login", "/system/resource/print"]


async def test_rejected_login_raises_auth_error(scripted):
    conn = RouterOSConnection("127.0.0.1", scripted.port, "admin", "wrong", timeout_seconds=2.0)
    with pytest.raises(RouterOSAuthenticationError):
        await conn.connect()
    await conn.close()


async def test_trap_is_classified_and_connection_stays_usable(connection):
    with pytest.raises(RouterOSDuplicateError):
        await connection.run("/ppp/secret/add", {"name": "taken"})

    reply = await connection.run("/ppp/secret/add", {"name": "alice"})
    assert reply.done == {"ret": "*1A"}


async def test_transport_loss_reconnects_once_and_retries(connection, scripted):
    await connection.connect()
    scripted.drop_once.add("/system/resource/print")

    reply = await connection.run("/system/resource/print")

    assert reply.re[0]["uptime"] == "1d"
    assert scripted.logins == 2
    assert scripted.received.count("/system/resource/print") == 2


async def test_concurrent_runs_are_linearized_in_order(connection, scripted):
    commands = [f"/tool/step{i}" for i in range(5)]
    await asyncio.gather(*(connection.run(c) for c in commands))

    assert [c for c in scripted.received if c.startswith("/tool/")] == commands


async def test_backlog_overflow_raises_queue_full(scripted):
    conn = RouterOSConnection(
        "127.0.0.1", scripted.port, "admin", PASSWORD, timeout_seconds=2.0, queue_size=1
    )
    slow = asyncio.create_task(conn.run("/slow"))
    await asyncio.sleep(0.05)

    with pytest.raises(RouterOSQueueFullError):
        await conn.run("/system/resource/print")

    scripted.release_slow.set()
    await slow
    await conn.close()


async def test_listen_streams_until_cancel(connection):
    stream = await connection.listen("/interface/monitor-traffic", {"interface": "ether1"})

    records = []
    async for record in stream:
        records.append(record["rx-bits-per-second"])
        if len(records) == 2:
            await stream.cancel()

    assert records == ["1000", "2000"]
    assert stream.cancelled
    assert not stream.completed


async def test_finite_listen_completes_on_done(connection):
    stream = await connection.listen("/ping", {"address": "10.0.0.2", "count": 3})

    records = [record async for record in stream]

    assert [r["seq"] for r in records] == ["0", "1", "2"]
    assert stream.completed


async def test_listen_ends_with_transport_loss_when_router_drops(connection, scripted):
    stream = await connection.listen("/interface/monitor-traffic", {"interface": "ether1"})
    await stream.__anext__()
    await stream.__anext__()

    for writer in scripted.listens.values():
        writer.close()

    with pytest.raises(RouterOSTransportLostError):
        await stream.__anext__()


async def test_dial_failure_raises_connection_error():
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    conn = RouterOSConnection("127.0.0.1", port, "admin", PASSWORD, timeout_seconds=1.0)
    with pytest.raises(RouterOSConnectionError):
        await conn.run("/system/resource/print")
    await conn.close()


async def test_closed_connection_refuses_commands(connection):
    await connection.run("/system/resource/print")
    await connection.close()

    with pytest.raises(RouterOSTransportLostError):
        await connection.run("/system/resource/print")
    await connection.close()


async def test_cancelled_consumer_does_not_lose_pending_read(connection):
    stream = await connection.listen("/interface/monitor-traffic", {"interface": "ether1"})
    await stream.__anext__()
    await stream.__anext__()

    waiting = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.05)
    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting

    await stream.cancel()
    assert [record async for record in stream] == []
    assert stream.cancelled
    assert connection.is_connected

    reply = await connection.run("/system/resource/print")
    assert reply.re[0]["version"] == "7.14"


async def test_close_ends_active_listen_with_transport_loss(connection):
    stream = await connection.listen("/interface/monitor-traffic", {"interface": "ether1"})
    await stream.__anext__()
    await stream.__anext__()

    waiting = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0.05)
    await connection.close()

    with pytest.raises(RouterOSTransportLostError, match="closed network connection"):
        await waiting
    assert stream.finished


class _ScriptedProtocol:
    def __init__(self, replies):
        self.written = []
        self._replies = list(replies)

    def writeSentence(self, cmd, *words):
        self.written.append([cmd, *words])

    def readSentence(self):
        tag = self.written[-1][-1][len(".tag="):]
        reply_word, words = self._replies.pop(0)
        return reply_word, tuple(w.replace("{tag}", tag) for w in words)


class _ScriptedApi:
    def __init__(self, replies):
        self.protocol = _ScriptedProtocol(replies)


def test_exchange_skips_sentences_of_other_tags():
    conn = RouterOSConnection("127.0.0.1")
    api = _ScriptedApi(
        [
            ("!done", (".tag=stale",)),
            ("!re", ("=name=ether1", ".tag={tag}")),
            ("!re", ("=name=ether9", ".tag=stale")),
            ("!done", ("=ret=ok", ".tag={tag}")),
        ]
    )

    reply = conn._exchange(api, "/interface/print")

    assert reply.re == [{"name": "ether1"}]
    assert reply.done == {"ret": "ok"}


def test_exchange_raises_first_trap_after_done():
    conn = RouterOSConnection("127.0.0.1")
    api = _ScriptedApi(
        [
            ("!trap", ("=message=failure: already have such entry", ".tag={tag}")),
            ("!trap", ("=message=second", ".tag={tag}")),
            ("!done", (".tag={tag}",)),
        ]
    )

    with pytest.raises(RouterOSDuplicateError):
        conn._exchange(api, "/ip/pool/add", {"name": "p1"})
    assert api.protocol.written[0][:2] == ["/ip/pool/add", "=name=p1"]


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (FatalError("session terminated on request"), RouterOSFatalError),
        (ConnectionClosed("Connection unexpectedly closed"), RouterOSTransportLostError),
        (BrokenPipeError(32, "Broken pipe"), RouterOSTransportLostError),
        (TimeoutError("timed out"), RouterOSTimeoutError),
    ],
)
def test_translate_error_maps_library_errors(error, expected):
    translated = translate_error(error, "Reply timeout")

    assert type(translated) is expected


def test_translated_transport_errors_trigger_reconnect():
    assert is_transport_lost(translate_error(FatalError("x"), "ctx"))
    assert is_transport_lost(translate_error(ConnectionClosed("x"), "ctx"))
    assert is_transport_lost(translate_error(OSError("reset"), "ctx"))
    assert not is_transport_lost(translate_error(TimeoutError("timed out"), "ctx"))


def test_tls_is_selected_by_api_ssl_port():
    assert RouterOSConnection("10.0.0.1", 8729).use_tls
    assert not RouterOSConnection("10.0.0.1", 8728).use_tls
    assert RouterOSConnection("10.0.0.1", 8728, use_tls=True).use_tls
