"""PPP profile service: profiles mirrored to ``/ppp/profile`` on the device."""

import logging
from typing import Any

from sqlalchemy import func, select

from mikrops.domain.exceptions import DuplicateResourceError, NotFoundError, ValidationError
from mikrops.domain.models import Profile, ProfileCreate, ProfileUpdate
from mikrops.domain.services.device import DeviceService
from mikrops.domain.services.write_through import (
    WriteThroughCoordinator,
    WriteThroughTransaction,
)
from mikrops.infra.db.models import Customer as CustomerORM
from mikrops.infra.db.models import PPPProfile as ProfileORM
from mikrops.infra.db.session import DatabaseSessionManager

logger = logging.getLogger(__name__)

PROFILE_PATH = "/ppp/profile"


def _router_args(profile: ProfileORM) -> dict[str, Any]:
    return {
        "name": profile.name,
        "local-address": profile.local_address,
        "remote-address": profile.remote_address,
        "rate-limit": profile.rate_limit,
    }


class ProfileService:
    """Create, update and delete PPP profiles through the write-through path."""

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        devices: DeviceService,
        write_through: WriteThroughCoordinator,
    ) -> None:
        self.db = session_manager
        self.devices = devices
        self.write_through = write_through

    async def _load(self, tenant_id: str, profile_id: str) -> ProfileORM:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProfileORM).where(
                    ProfileORM.id == profile_id, ProfileORM.tenant_id == tenant_id
                )
            )
            profile = result.scalar_one_or_none()
        if profile is None:
            raise NotFoundError(
                f"Profile not found: {profile_id}",
                context={"tenant_id": tenant_id, "profile_id": profile_id},
            )
        return profile

    async def get(self, tenant_id: str, profile_id: str) -> Profile:
        return Profile.model_validate(await self._load(tenant_id, profile_id))

    async def list_profiles(self, tenant_id: str) -> list[Profile]:
        async with self.db.session() as session:
            result = await session.execute(
                select(ProfileORM)
                .where(ProfileORM.tenant_id == tenant_id)
                .order_by(ProfileORM.name)
            )
            return [Profile.model_validate(p) for p in result.scalars().all()]

    async def create(self, tenant_id: str, data: ProfileCreate) -> Profile:
        """Create a profile on the tenant's active device.

        Raises:
            NoActiveDeviceError: Tenant has no active device
            DuplicateResourceError: Name already used on the device
        """
        device = await self.devices.get_active(tenant_id)

        async def create_profile(tx: WriteThroughTransaction) -> Profile:
            existing = await tx.session.execute(
                select(ProfileORM.id).where(
                    ProfileORM.device_id == device.id, ProfileORM.name == data.name
                )
            )
            if existing.first() is not None:
                raise DuplicateResourceError(
                    f"Profile {data.name!r} already exists",
                    context={"device_id": device.id, "name": data.name},
                )

            profile = ProfileORM(
                tenant_id=tenant_id,
                device_id=device.id,
                name=data.name,
                local_address=data.local_address,
                remote_address=data.remote_address,
                rate_limit=data.rate_limit,
                price=data.price,
                external_object_id=None,
            )
            tx.session.add(profile)
            await tx.session.flush()

            profile.external_object_id = await tx.add(PROFILE_PATH, _router_args(profile))
            await tx.session.flush()
            await tx.session.refresh(profile)
            return Profile.model_validate(profile)

        created = await self.write_through.run(self.devices.endpoint(device), create_profile)
        logger.info(
            "PPP profile created",
            extra={"tenant_id": tenant_id, "device_id": device.id, "object_id": created.external_object_id},
        )
        return created

    async def update(self, tenant_id: str, profile_id: str, data: ProfileUpdate) -> Profile:
        current = await self._load(tenant_id, profile_id)
        endpoint = await self.devices.resolve_endpoint(current.device_id)
        changes = data.model_dump(exclude_unset=True)

        async def update_profile(tx: WriteThroughTransaction) -> Profile:
            profile = await tx.session.get(ProfileORM, profile_id)
            if profile is None:
                raise NotFoundError(f"Profile not found: {profile_id}")

            if "name" in changes and changes["name"] != profile.name:
                clash = await tx.session.execute(
                    select(ProfileORM.id).where(
                        ProfileORM.device_id == profile.device_id,
                        ProfileORM.name == changes["name"],
                    )
                )
                if clash.first() is not None:
                    raise DuplicateResourceError(f"Profile {changes['name']!r} already exists")

            for field, value in changes.items():
                setattr(profile, field, value)
            await tx.session.flush()

            if profile.external_object_id:
                await tx.set(PROFILE_PATH, profile.external_object_id, _router_args(profile))
            else:
                profile.external_object_id = await tx.add(PROFILE_PATH, _router_args(profile))
            await tx.session.flush()
            await tx.session.refresh(profile)
            return Profile.model_validate(profile)

        return await self.write_through.run(endpoint, update_profile)

    async def delete(self, tenant_id: str, profile_id: str) -> None:
        """Remove the profile from the device, then the database.

        Raises:
            ValidationError: Customers still use the profile
        """
        current = await self._load(tenant_id, profile_id)
        endpoint = await self.devices.resolve_endpoint(current.device_id)

        async def delete_profile(tx: WriteThroughTransaction) -> None:
            in_use = await tx.session.scalar(
                select(func.count()).select_from(CustomerORM).where(CustomerORM.profile_id == profile_id)
            )
            if in_use:
                raise ValidationError(
                    f"Profile {current.name!r} is used by {in_use} customer(s)",
                    context={"profile_id": profile_id},
                )

            profile = await tx.session.get(ProfileORM, profile_id)
            if profile is None:
                return
            if profile.external_object_id:
                await tx.remove(PROFILE_PATH, profile.external_object_id)
            await tx.session.delete(profile)

        await self.write_through.run(endpoint, delete_profile)
        logger.info("PPP profile deleted", extra={"tenant_id": tenant_id, "profile_id": profile_id})
