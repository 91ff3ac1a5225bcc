"""Request/reply helpers over a RouterOS connection.

The executor is stateless: it formats a menu path plus an argument map into a
command, runs it through the connection (which owns retry on transport loss)
and decodes the reply into plain dictionaries.

Example:
    executor = CommandExecutor(connection)

    object_id = await executor.add("/ppp/secret", {"name": "alice", "password": "p"})
    rows = await executor.print("/ppp/secret", query={".id": object_id})
    await executor.remove("/ppp/secret", object_id)
"""

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from mikrops.infra.routeros.exceptions import RouterOSNoObjectIdError, RouterOSNotFoundError

logger = logging.getLogger(__name__)


class CommandRunner(Protocol):
    """Anything with a RouterOSConnection-compatible ``run``."""

    device_id: str

    async def run(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> Any: ...


def _menu(path: str) -> str:
    path = path.rstrip("/")
    if not path.startswith("/"):
        path = "/" + path
    return path


def extract_object_id(done: Mapping[str, str]) -> str:
    """Return the object id RouterOS assigned in an ``add`` reply.

    Raises:
        RouterOSNoObjectIdError: Neither ``ret`` nor ``after`` is present
    """
    object_id = done.get("ret") or done.get("after")
    if not object_id:
        raise RouterOSNoObjectIdError("add completed without ret/after object id")
    return object_id


class CommandExecutor:
    """Typed RouterOS command helpers bound to one connection."""

    def __init__(self, connection: CommandRunner) -> None:
        self.connection = connection

    @property
    def device_id(self) -> str:
        return self.connection.device_id

    async def run(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        query: Mapping[str, object] | None = None,
    ) -> list[dict[str, str]]:
        """Run an arbitrary command and return its ``!re`` records."""
        reply = await self.connection.run(command, args, query)
        return reply.re

    async def print(
        self,
        path: str,
        query: Mapping[str, object] | None = None,
        proplist: list[str] | None = None,
    ) -> list[dict[str, str]]:
        """List items under a menu, optionally filtered with ``?k=v`` query words."""
        args = {".proplist": ",".join(proplist)} if proplist else None
        reply = await self.connection.run(f"{_menu(path)}/print", args, query)
        return reply.re

    async def get(self, path: str, object_id: str) -> dict[str, str]:
        """Fetch one item by id.

        Raises:
            RouterOSNotFoundError: Print-by-id returned no records
        """
        rows = await self.print(path, query={".id": object_id})
        if not rows:
            raise RouterOSNotFoundError(f"no such item {object_id} in {_menu(path)}")
        return rows[0]

    async def add(self, path: str, args: Mapping[str, object]) -> str:
        """Create an item and return the RouterOS object id (``*1A``)."""
        reply = await self.connection.run(f"{_menu(path)}/add", args)
        object_id = extract_object_id(reply.done)
        logger.debug(
            "RouterOS object created",
            extra={"device_id": self.device_id, "path": _menu(path), "object_id": object_id},
        )
        return object_id

    async def set(self, path: str, object_id: str, args: Mapping[str, object]) -> None:
        """Update an item by id. Idempotent on the router side."""
        await self.connection.run(f"{_menu(path)}/set", {".id": object_id, **args})

    async def remove(self, path: str, object_id: str, *, missing_ok: bool = True) -> None:
        """Remove an item by id; a missing item counts as removed unless ``missing_ok`` is False."""
        try:
            await self.connection.run(f"{_menu(path)}/remove", {".id": object_id})
        except RouterOSNotFoundError:
            if not missing_ok:
                raise
            logger.debug(
                "RouterOS object already absent",
                extra={"device_id": self.device_id, "path": _menu(path), "object_id": object_id},
            )

    async def system_resource(self) -> dict[str, str]:
        """Liveness probe: ``/system/resource/print``."""
        reply = await self.connection.run("/system/resource/print")
        return reply.re[0] if reply.re else {}
