"""Tests for the profile, customer and PPP session services."""

import asyncio
import json

import pytest

from fakes import TENANT, wait_until
from mikrops.domain.exceptions import (
    DuplicateResourceError,
    NoActiveDeviceError,
    NotFoundError,
    ValidationError,
)
from mikrops.domain.models import (
    CustomerCreate,
    CustomerStatus,
    CustomerUpdate,
    PPPoECallback,
    ProfileCreate,
    ProfileUpdate,
)
from mikrops.infra.routeros.exceptions import RouterOSDuplicateError
from mikrops.streams.kinds import ppp_active_channel, ppp_inactive_channel


@pytest.fixture
async def profile(container, active_device):
    return await container.profiles.create(
        TENANT,
        ProfileCreate(name="10M", local_address="10.10.0.1", remote_address="pool-10m", rate_limit="10M/10M"),
    )


@pytest.fixture
async def alice(container, profile):
    return await container.customers.create(
        TENANT,
        CustomerCreate(username="alice", password="pa55", profile_id=profile.id, name="Alice", price=100000),
    )


async def _listen(broker, channel):
    """Subscribe and return a task resolving to the next decoded payload."""
    stream = broker.subscribe(channel)
    task = asyncio.create_task(asyncio.wait_for(stream.__anext__(), 1.0))
    await wait_until(lambda: broker.subscriber_count(channel) > 0)
    return task


class TestProfiles:
    async def test_update_sets_router_object_by_id(self, container, router, profile):
        updated = await container.profiles.update(TENANT, profile.id, ProfileUpdate(rate_limit="15M/15M"))

        [item] = router.items("/ppp/profile")
        assert item[".id"] == updated.external_object_id == profile.external_object_id
        assert item["rate-limit"] == "15M/15M"
        assert updated.rate_limit == "15M/15M"

    async def test_duplicate_name_rejected_before_router_call(self, container, router, profile):
        with pytest.raises(DuplicateResourceError):
            await container.profiles.create(TENANT, ProfileCreate(name="10M"))
        assert len(router.items("/ppp/profile")) == 1

    async def test_delete_in_use_profile_refused(self, container, router, profile, alice):
        with pytest.raises(ValidationError, match="used by 1 customer"):
            await container.profiles.delete(TENANT, profile.id)
        assert len(router.items("/ppp/profile")) == 1

    async def test_delete_removes_router_object(self, container, router, profile):
        await container.profiles.delete(TENANT, profile.id)

        assert router.items("/ppp/profile") == []
        assert await container.profiles.list_profiles(TENANT) == []

    async def test_create_needs_active_device(self, container):
        with pytest.raises(NoActiveDeviceError):
            await container.profiles.create(TENANT, ProfileCreate(name="10M"))


class TestCustomers:
    async def test_create_pushes_secret(self, container, router, profile, alice):
        [secret] = router.items("/ppp/secret")

        assert secret[".id"] == alice.external_object_id
        assert secret["name"] == "alice"
        assert secret["password"] == "pa55"
        assert secret["profile"] == "10M"
        assert secret["service"] == "pppoe"
        assert alice.status == CustomerStatus.PENDING
        assert alice.device_id == profile.device_id

    async def test_duplicate_username_in_database(self, container, router, profile, alice):
        with pytest.raises(DuplicateResourceError):
            await container.customers.create(
                TENANT, CustomerCreate(username="alice", password="x", profile_id=profile.id)
            )
        assert len(router.items("/ppp/secret")) == 1

    async def test_secret_already_on_router(self, container, router, profile):
        router.menus.setdefault("/ppp/secret", {})["*FF"] = {"name": "bob"}

        with pytest.raises(RouterOSDuplicateError):
            await container.customers.create(
                TENANT, CustomerCreate(username="bob", password="x", profile_id=profile.id)
            )
        assert await container.customers.list_customers(TENANT) == []

    async def test_unknown_profile(self, container, active_device):
        with pytest.raises(NotFoundError):
            await container.customers.create(
                TENANT, CustomerCreate(username="carol", password="x", profile_id="missing")
            )

    async def test_update_password_and_price(self, container, router, alice):
        updated = await container.customers.update(
            TENANT, alice.id, CustomerUpdate(password="n3w", price=150000)
        )

        [secret] = router.items("/ppp/secret")
        assert secret["password"] == "n3w"
        assert updated.price == 150000
        assert updated.external_object_id == alice.external_object_id

    async def test_delete_removes_secret(self, container, router, alice):
        await container.customers.delete(TENANT, alice.id)

        assert router.items("/ppp/secret") == []
        with pytest.raises(NotFoundError):
            await container.customers.get(TENANT, alice.id)

    async def test_delete_tolerates_secret_removed_on_router(self, container, router, alice):
        router.menus["/ppp/secret"].clear()

        await container.customers.delete(TENANT, alice.id)

        assert await container.customers.list_customers(TENANT) == []

    async def test_tenant_isolation(self, container, alice):
        with pytest.raises(NotFoundError):
            await container.customers.get("isp-b", alice.id)

    async def test_list_filters(self, container, profile, alice):
        await container.customers.create(
            TENANT, CustomerCreate(username="bob", password="x", profile_id=profile.id)
        )

        assert [c.username for c in await container.customers.list_customers(TENANT)] == ["alice", "bob"]
        assert [c.username for c in await container.customers.list_customers(TENANT, username="bob")] == ["bob"]
        assert await container.customers.list_customers(TENANT, status=CustomerStatus.ACTIVE) == []


class TestCallbacks:
    async def test_pppoe_up_marks_active_and_publishes(self, container, alice):
        pending = await _listen(container.local_broker, ppp_active_channel(TENANT))

        customer = await container.customers.pppoe_up(
            TENANT,
            PPPoECallback(name="alice", remote_address="10.20.0.5", caller_id="AA:BB:CC:00:11:22", interface="<pppoe-alice>"),
        )

        assert customer.status == CustomerStatus.ACTIVE
        assert customer.remote_address == "10.20.0.5"
        assert customer.last_online_at is not None
        event = json.loads(await pending)
        assert event["type"] == "pppoe_event"
        assert event["status"] == "connected"
        assert event["customer_id"] == alice.id
        assert event["ip"] == "10.20.0.5"

    async def test_pppoe_down_marks_inactive(self, container, alice):
        await container.customers.pppoe_up(TENANT, PPPoECallback(name="alice", remote_address="10.20.0.5"))
        pending = await _listen(container.local_broker, ppp_inactive_channel(TENANT))

        customer = await container.customers.pppoe_down(TENANT, PPPoECallback(name="alice"))

        assert customer.status == CustomerStatus.INACTIVE
        assert json.loads(await pending)["status"] == "disconnected"

    async def test_callback_for_unknown_user(self, container, active_device):
        with pytest.raises(NotFoundError):
            await container.customers.pppoe_up(TENANT, PPPoECallback(name="ghost"))

    async def test_traffic_key_uses_dynamic_interface(self, container, alice):
        key = await container.customers.traffic_key(TENANT, alice.id)
        assert key.selector == "<pppoe-alice>"

        await container.customers.pppoe_up(TENANT, PPPoECallback(name="alice", interface="<pppoe-alice-1>"))
        key = await container.customers.traffic_key(TENANT, alice.id)
        assert key.selector == "<pppoe-alice-1>"

    async def test_ping_key_needs_known_ip(self, container, alice):
        with pytest.raises(ValidationError, match="no known IP"):
            await container.customers.ping_key(TENANT, alice.id)

        await container.customers.pppoe_up(TENANT, PPPoECallback(name="alice", remote_address="10.20.0.5"))
        key = await container.customers.ping_key(TENANT, alice.id)

        assert key.selector == "10.20.0.5"
        assert key.param_map == {"count": "3"}


class TestActiveSync:
    async def test_list_active(self, container, router, active_device):
        router.menus["/ppp/active"] = {
            "*A": {"name": "alice", "service": "pppoe", "caller-id": "AA:BB", "address": "10.20.0.5", "uptime": "1h"},
        }

        [session] = await container.ppp.list_active(TENANT)

        assert session.id == "*A"
        assert session.caller_id == "AA:BB"
        assert session.address == "10.20.0.5"

    async def test_router_list_is_authoritative(self, container, router, profile, alice):
        await container.customers.create(
            TENANT, CustomerCreate(username="bob", password="x", profile_id=profile.id)
        )
        await container.customers.pppoe_up(TENANT, PPPoECallback(name="bob"))
        router.menus["/ppp/active"] = {
            "*A": {"name": "alice", "address": "10.20.0.5", "caller-id": "AA:BB"},
            "*B": {"name": "carol", "address": "10.20.0.9"},
        }

        report = await container.ppp.sync_active(TENANT)

        assert report.online == 2
        assert report.activated == ["alice"]
        assert report.deactivated == ["bob"]
        assert report.unknown == ["carol"]
        statuses = {c.username: c.status for c in await container.customers.list_customers(TENANT)}
        assert statuses == {"alice": CustomerStatus.ACTIVE, "bob": CustomerStatus.INACTIVE}
        assert (await container.customers.get(TENANT, alice.id)).remote_address == "10.20.0.5"

    async def test_sync_is_idempotent(self, container, router, alice):
        router.menus["/ppp/active"] = {"*A": {"name": "alice", "address": "10.20.0.5"}}

        await container.ppp.sync_active(TENANT)
        report = await container.ppp.sync_active(TENANT)

        assert report.activated == []
        assert report.deactivated == []
