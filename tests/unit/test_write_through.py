"""Tests for the database + device write-through coordinator."""

import pytest
from sqlalchemy import func, select

from fakes import TENANT
from mikrops.domain.exceptions import ValidationError
from mikrops.domain.models import ProfileCreate
from mikrops.domain.services.write_through import WriteThroughTransaction
from mikrops.infra.db.models import OrphanedObject, PPPProfile
from mikrops.infra.routeros.exceptions import (
    RouterOSDuplicateError,
    RouterOSTransportLostError,
)

pytestmark = pytest.mark.usefixtures("active_device")


async def _endpoint(container):
    return await container.devices.active_endpoint(TENANT)


async def _count(container, model) -> int:
    async with container.db.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def test_commit_keeps_row_and_router_object(container, router, active_device):
    async def create(tx: WriteThroughTransaction) -> str:
        row = PPPProfile(tenant_id=TENANT, device_id=active_device.id, name="10M")
        tx.session.add(row)
        await tx.session.flush()
        row.external_object_id = await tx.add("/ppp/profile", {"name": "10M"})
        return row.external_object_id

    object_id = await container.write_through.run(await _endpoint(container), create)

    assert router.items("/ppp/profile") == [{".id": object_id, "name": "10M"}]
    assert await _count(container, PPPProfile) == 1


async def test_router_failure_rolls_back_database(container, router, active_device):
    router.fail("/ppp/profile/add", RouterOSDuplicateError("failure: already have such name"))

    async def create(tx: WriteThroughTransaction) -> None:
        tx.session.add(PPPProfile(tenant_id=TENANT, device_id=active_device.id, name="10M"))
        await tx.session.flush()
        await tx.add("/ppp/profile", {"name": "10M"})

    with pytest.raises(RouterOSDuplicateError):
        await container.write_through.run(await _endpoint(container), create)

    assert await _count(container, PPPProfile) == 0
    assert router.items("/ppp/profile") == []
    assert not [c for c, _ in router.commands if c.endswith("/remove")]


async def test_failure_after_add_removes_created_objects(container, router, active_device):
    async def create(tx: WriteThroughTransaction) -> None:
        tx.session.add(PPPProfile(tenant_id=TENANT, device_id=active_device.id, name="10M"))
        await tx.add("/ppp/profile", {"name": "10M"})
        await tx.add("/ppp/secret", {"name": "alice", "profile": "10M"})
        raise ValidationError("price must be positive")

    with pytest.raises(ValidationError, match="price must be positive"):
        await container.write_through.run(await _endpoint(container), create)

    assert router.items("/ppp/profile") == []
    assert router.items("/ppp/secret") == []
    assert await _count(container, PPPProfile) == 0
    # newest first
    removes = [c for c, _ in router.commands if c.endswith("/remove")]
    assert removes == ["/ppp/secret/remove", "/ppp/profile/remove"]
    assert await _count(container, OrphanedObject) == 0


async def test_failed_compensation_records_orphan_then_reconciles(container, router, active_device):
    router.fail("/ppp/secret/remove", RouterOSTransportLostError("broken pipe"))

    async def create(tx: WriteThroughTransaction) -> None:
        await tx.add("/ppp/secret", {"name": "alice"})
        raise RuntimeError("database went away")

    with pytest.raises(RuntimeError, match="database went away"):
        await container.write_through.run(await _endpoint(container), create)

    [leftover] = router.items("/ppp/secret")
    [orphan] = await container.write_through.pending_orphans()
    assert orphan.device_id == active_device.id
    assert orphan.path == "/ppp/secret"
    assert orphan.object_id == leftover[".id"]
    assert "database went away" in orphan.reason

    result = await container.reconcile_orphans()

    assert result == {"resolved": 1, "failed": 0}
    assert router.items("/ppp/secret") == []
    assert await container.write_through.pending_orphans() == []


async def test_reconcile_counts_attempts_on_failure(container, router, active_device):
    router.fail("/ppp/secret/remove", RouterOSTransportLostError("broken pipe"))
    router.fail("/ppp/secret/remove", RouterOSTransportLostError("broken pipe"))

    async def create(tx: WriteThroughTransaction) -> None:
        await tx.add("/ppp/secret", {"name": "bob"})
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await container.write_through.run(await _endpoint(container), create)

    assert await container.reconcile_orphans() == {"resolved": 0, "failed": 1}
    [orphan] = await container.write_through.pending_orphans()
    assert orphan.attempts == 1

    # exhausted orphans are left for operators
    assert await container.write_through.pending_orphans(max_attempts=1) == []


async def test_profile_service_create_uses_write_through(container, router):
    profile = await container.profiles.create(
        TENANT, ProfileCreate(name="20M", local_address="10.10.0.1", rate_limit="20M/20M")
    )

    assert profile.external_object_id == router.items("/ppp/profile")[0][".id"]
    assert router.items("/ppp/profile")[0]["rate-limit"] == "20M/20M"
