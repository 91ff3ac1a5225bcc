"""Tests for CommandExecutor and ConnectionPool using the in-memory router."""

import pytest

from fakes import FakeRouter
from mikrops.infra.routeros.connection import Reply
from mikrops.infra.routeros.exceptions import (
    RouterOSNoObjectIdError,
    RouterOSNotFoundError,
    RouterOSTransportLostError,
)
from mikrops.infra.routeros.executor import CommandExecutor, extract_object_id
from mikrops.infra.routeros.pool import ConnectionPool, DedicatedConnectionProvider, DeviceEndpoint


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def executor(router):
    return CommandExecutor(router.factory("10.0.0.1", device_id="dev-1"))


@pytest.fixture
def endpoint():
    return DeviceEndpoint(
        device_id="dev-1", host="10.0.0.1", port=8728, username="admin", password="api-secret"
    )


async def test_add_returns_object_id_and_print_finds_it(executor, router):
    object_id = await executor.add("/ppp/secret", {"name": "alice", "password": "p"})

    assert object_id == "*1"
    rows = await executor.print("ppp/secret/", query={".id": object_id})
    assert rows == [{".id": "*1", "name": "alice", "password": "p"}]
    assert router.commands[0] == ("/ppp/secret/add", {"name": "alice", "password": "p"})


async def test_set_updates_by_id(executor, router):
    object_id = await executor.add("/ppp/profile", {"name": "10M"})
    await executor.set("/ppp/profile", object_id, {"rate-limit": "10M/10M"})

    assert (await executor.get("/ppp/profile", object_id))["rate-limit"] == "10M/10M"


async def test_get_missing_raises_not_found(executor):
    with pytest.raises(RouterOSNotFoundError):
        await executor.get("/ppp/secret", "*99")


async def test_remove_missing_is_ok_unless_strict(executor):
    await executor.remove("/ppp/secret", "*99")

    with pytest.raises(RouterOSNotFoundError):
        await executor.remove("/ppp/secret", "*99", missing_ok=False)


async def test_system_resource(executor):
    resource = await executor.system_resource()
    assert resource["version"] == "7.14"


def test_extract_object_id_prefers_ret_then_after():
    assert extract_object_id({"ret": "*1A"}) == "*1A"
    assert extract_object_id({"after": "*2"}) == "*2"
    with pytest.raises(RouterOSNoObjectIdError):
        extract_object_id({})


async def test_add_without_object_id_raises():
    class NoIdRunner:
        device_id = "dev-1"

        async def run(self, command, args=None, query=None):
            return Reply()

    with pytest.raises(RouterOSNoObjectIdError):
        await CommandExecutor(NoIdRunner()).add("/ppp/secret", {"name": "alice"})


async def test_pool_shares_one_connection_and_closes_after_last_borrow(router, endpoint):
    pool = ConnectionPool(connection_factory=router.factory)

    async with pool.borrow(endpoint) as first:
        async with pool.borrow(endpoint) as second:
            assert first is second
            assert pool.stats()["shared_connections"] == 1
        assert not first.closed

    assert first.closed
    assert pool.stats()["shared_connections"] == 0


async def test_pool_dedicated_connections_are_released(router, endpoint):
    pool = ConnectionPool(connection_factory=router.factory)
    provider = DedicatedConnectionProvider(pool, resolve_endpoint=_resolver(endpoint))

    connection = await provider.open("dev-1")
    assert connection.connected
    assert connection.device_id == "dev-1"
    assert pool.stats()["dedicated_connections"] == 1

    await provider.release(connection)
    assert connection.closed
    assert pool.stats()["dedicated_connections"] == 0


async def test_pool_dedicated_dial_failure_leaves_nothing_behind(router, endpoint):
    pool = ConnectionPool(connection_factory=router.factory)
    router.dial_failures.append(RouterOSTransportLostError("EOF"))

    with pytest.raises(RouterOSTransportLostError):
        await pool.open_dedicated(endpoint)
    assert pool.stats()["dedicated_connections"] == 0


async def test_close_device_closes_shared_and_dedicated(router, endpoint):
    pool = ConnectionPool(connection_factory=router.factory)
    dedicated = await pool.open_dedicated(endpoint)

    async with pool.borrow(endpoint) as shared:
        await pool.close_device("dev-1")
        assert shared.closed

    assert dedicated.closed
    assert pool.stats() == {"shared_connections": 0, "dedicated_connections": 0}


def _resolver(endpoint):
    async def resolve(device_id):
        assert device_id == endpoint.device_id
        return endpoint

    return resolve
