"""Tests for DeviceService: registry, activation and liveness."""

import pytest
from sqlalchemy import select

from fakes import TENANT, wait_until
from mikrops.api.container import ServiceContainer
from mikrops.domain.exceptions import NoActiveDeviceError, NotFoundError, ValidationError
from mikrops.domain.models import DeviceCreate
from mikrops.infra.db.models import Device as DeviceORM
from mikrops.streams.kinds import SubscriptionKey


def _create(name: str, host: str, **kwargs) -> DeviceCreate:
    return DeviceCreate(name=name, host=host, password="api-secret", **kwargs)


async def test_register_encrypts_secret(container):
    device = await container.devices.register(TENANT, _create("core-1", "10.0.0.1"))

    async with container.db.session() as session:
        row = await session.get(DeviceORM, device.id)
    assert row.encrypted_secret != "api-secret"
    assert container.devices.endpoint(row).password == "api-secret"
    assert not device.is_active
    assert device.timeout_seconds == container.settings.device_default_timeout


async def test_register_rejects_duplicate_endpoint(container):
    await container.devices.register(TENANT, _create("core-1", "10.0.0.1"))

    with pytest.raises(ValidationError, match="already registered"):
        await container.devices.register(TENANT, _create("core-1b", "10.0.0.1"))


async def test_same_endpoint_allowed_for_other_tenant(container):
    await container.devices.register(TENANT, _create("core-1", "10.0.0.1"))

    other = await container.devices.register("isp-b", _create("core-1", "10.0.0.1"))

    assert other.tenant_id == "isp-b"


async def test_exactly_one_active_device(container):
    first = await container.devices.register(TENANT, _create("core-1", "10.0.0.1", activate=True))
    second = await container.devices.register(TENANT, _create("core-2", "10.0.0.2", activate=True))

    devices = {d.id: d for d in await container.devices.list_devices(TENANT)}
    assert devices[second.id].is_active
    assert not devices[first.id].is_active
    assert (await container.devices.get_active(TENANT)).id == second.id

    await container.devices.activate(TENANT, first.id)
    assert (await container.devices.get_active(TENANT)).id == first.id


async def test_activation_is_tenant_scoped(container):
    mine = await container.devices.register(TENANT, _create("core-1", "10.0.0.1", activate=True))
    await container.devices.register("isp-b", _create("edge", "10.9.0.1", activate=True))

    assert (await container.devices.get_active(TENANT)).id == mine.id


async def test_activate_terminates_old_device_streams(container, router):
    old = await container.devices.register(TENANT, _create("core-1", "10.0.0.1", activate=True))
    new = await container.devices.register(TENANT, _create("core-2", "10.0.0.2"))

    subscriber = await container.multiplexer.subscribe(SubscriptionKey.log(old.id))
    await wait_until(lambda: router.streams)

    await container.devices.activate(TENANT, new.id)

    assert subscriber.closed
    assert subscriber.final.reason == "device-deactivated"
    assert not container.multiplexer.has_session(SubscriptionKey.log(old.id))
    assert all(c.closed for c in router.connections if c.device_id == old.id)


async def test_no_active_device(container):
    await container.devices.register(TENANT, _create("core-1", "10.0.0.1"))

    with pytest.raises(NoActiveDeviceError):
        await container.devices.get_active(TENANT)


async def test_unknown_device(container):
    with pytest.raises(NotFoundError):
        await container.devices.activate(TENANT, "missing")
    with pytest.raises(NotFoundError):
        await container.devices.get("isp-b", "missing")


async def test_resource_reports_liveness(container, router, active_device):
    resource = await container.devices.resource(TENANT, active_device.id)

    assert resource["version"] == "7.14"
    assert ("/system/resource/print", {}) in router.commands


async def test_ping_once_summarises_totals(container, router, active_device):
    router.ping_records = [
        {"seq": "0", "host": "8.8.8.8", "time": "12ms", "sent": "1", "received": "1", "packet-loss": "0"},
        {"sent": "3", "received": "2", "packet-loss": "33", "avg-rtt": "12ms", "min-rtt": "11ms", "max-rtt": "14ms"},
    ]

    result = await container.devices.ping_once(TENANT, active_device.id, "8.8.8.8")

    assert result.sent == 3
    assert result.received == 2
    assert result.packet_loss == "33%"
    assert result.avg_rtt == "12ms"
    assert result.is_reachable
    assert router.commands[-1] == ("/ping", {"address": "8.8.8.8", "count": "3"})


async def test_ping_once_unreachable(container, router, active_device):
    router.ping_records = [{"sent": "3", "received": "0", "packet-loss": "100"}]

    result = await container.devices.ping_once(TENANT, active_device.id, "10.99.0.1")

    assert not result.is_reachable


async def test_ping_once_requires_address(container, active_device):
    with pytest.raises(ValidationError):
        await container.devices.ping_once(TENANT, active_device.id, "")


async def test_bootstrap_registers_configured_device(settings, router):
    configured = settings.model_copy(
        update={"device_host": "192.168.88.1", "device_password": "boot", "device_username": "api"}
    )
    container = ServiceContainer.build(configured, connection_factory=router.factory, enable_scheduler=False)
    await container.start()
    try:
        active = await container.devices.get_active(TENANT)
        assert active.host == "192.168.88.1"
        assert active.username == "api"

        # idempotent
        again = await container.devices.bootstrap()
        assert again.id == active.id
        async with container.db.session() as session:
            rows = (await session.execute(select(DeviceORM))).scalars().all()
        assert len(rows) == 1
    finally:
        await container.close()
