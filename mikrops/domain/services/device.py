"""Device service: registry, active-device invariant and device probes.

Provides business logic for device registration (secrets encrypted at rest),
activation (exactly one active device per tenant), endpoint resolution for the
connection pool and liveness/ping probes.
"""

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select, update

from mikrops.config import Settings
from mikrops.domain.exceptions import NoActiveDeviceError, NotFoundError, ValidationError
from mikrops.domain.models import Device as DeviceView
from mikrops.domain.models import DeviceCreate, PingResult
from mikrops.infra.db.models import Device as DeviceORM
from mikrops.infra.db.session import DatabaseSessionManager
from mikrops.infra.routeros.executor import CommandExecutor
from mikrops.infra.routeros.pool import ConnectionPool, DeviceEndpoint
from mikrops.security.crypto import CredentialEncryption
from mikrops.streams.kinds import is_reachable

if TYPE_CHECKING:
    from mikrops.streams.multiplexer import StreamMultiplexer

logger = logging.getLogger(__name__)

ONE_SHOT_PING_COUNT = 3


class DeviceService:
    """Service for device registry and connectivity.

    Responsibilities:
    - Device registration with encrypted API secret
    - Activation: deactivate-all then activate-one in one transaction; live
      subscriptions of the previously active device are terminated
    - Endpoint resolution (decrypting the secret) for the connection pool
    - Liveness via ``/system/resource/print`` and one-shot ``/ping``

    Example:
        service = DeviceService(session_manager, pool, crypto, settings)

        device = await service.register("default", DeviceCreate(
            name="core-1", host="10.0.0.1", password="secret", activate=True,
        ))
        resource = await service.resource("default", device.id)
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        pool: ConnectionPool,
        crypto: CredentialEncryption,
        settings: Settings,
        multiplexer: "StreamMultiplexer | None" = None,
    ) -> None:
        self.db = session_manager
        self.pool = pool
        self.crypto = crypto
        self.settings = settings
        self.multiplexer = multiplexer

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def register(self, tenant_id: str, data: DeviceCreate) -> DeviceView:
        """Register a new device for a tenant.

        Raises:
            ValidationError: A device with the same host and port already exists
        """
        async with self.db.session() as session:
            existing = await session.execute(
                select(DeviceORM).where(
                    DeviceORM.tenant_id == tenant_id,
                    DeviceORM.host == data.host,
                    DeviceORM.port == data.port,
                )
            )
            if existing.scalar_one_or_none() is not None:
                raise ValidationError(
                    f"Device {data.host}:{data.port} is already registered",
                    context={"tenant_id": tenant_id, "host": data.host},
                )

            device = DeviceORM(
                tenant_id=tenant_id,
                name=data.name,
                host=data.host,
                port=data.port,
                username=data.username,
                encrypted_secret=self.crypto.encrypt(data.password),
                use_tls=data.use_tls,
                timeout_seconds=data.timeout_seconds or self.settings.device_default_timeout,
                queue_size=data.queue_size or self.settings.device_default_queue,
                is_active=False,
            )
            session.add(device)
            await session.flush()
            device_id = device.id

        logger.info(
            "Device registered",
            extra={"tenant_id": tenant_id, "device_id": device_id, "host": data.host},
        )

        if data.activate:
            return await self.activate(tenant_id, device_id)
        return await self.get(tenant_id, device_id)

    async def get(self, tenant_id: str, device_id: str) -> DeviceView:
        return DeviceView.model_validate(await self._get_orm(tenant_id, device_id))

    async def list_devices(self, tenant_id: str) -> list[DeviceView]:
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceORM).where(DeviceORM.tenant_id == tenant_id).order_by(DeviceORM.name)
            )
            return [DeviceView.model_validate(d) for d in result.scalars().all()]

    async def _get_orm(self, tenant_id: str, device_id: str) -> DeviceORM:
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceORM).where(DeviceORM.id == device_id, DeviceORM.tenant_id == tenant_id)
            )
            device = result.scalar_one_or_none()
        if device is None:
            raise NotFoundError(
                f"Device not found: {device_id}",
                context={"tenant_id": tenant_id, "device_id": device_id},
            )
        return device

    async def activate(self, tenant_id: str, device_id: str) -> DeviceView:
        """Make ``device_id`` the tenant's only active device.

        Runs as one transaction without any RouterOS call; on failure nothing
        changes. Subscriptions still running against the previously active
        device are terminated with a ``device-deactivated`` final event.

        Raises:
            NotFoundError: Device unknown for this tenant
        """
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceORM).where(DeviceORM.id == device_id, DeviceORM.tenant_id == tenant_id)
            )
            device = result.scalar_one_or_none()
            if device is None:
                raise NotFoundError(
                    f"Device not found: {device_id}",
                    context={"tenant_id": tenant_id, "device_id": device_id},
                )

            previous = await session.execute(
                select(DeviceORM.id).where(
                    DeviceORM.tenant_id == tenant_id,
                    DeviceORM.is_active.is_(True),
                    DeviceORM.id != device_id,
                )
            )
            deactivated = list(previous.scalars().all())

            await session.execute(
                update(DeviceORM).where(DeviceORM.tenant_id == tenant_id).values(is_active=False)
            )
            device.is_active = True
            await session.flush()
            await session.refresh(device)
            view = DeviceView.model_validate(device)

        logger.info(
            "Device activated",
            extra={"tenant_id": tenant_id, "device_id": device_id, "deactivated": deactivated},
        )

        for old_id in deactivated:
            if self.multiplexer is not None:
                await self.multiplexer.terminate_device(old_id, reason="device-deactivated")
            await self.pool.close_device(old_id)

        return view

    async def get_active(self, tenant_id: str) -> DeviceORM:
        """Return the tenant's active device.

        Raises:
            NoActiveDeviceError: No device is active
        """
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceORM).where(
                    DeviceORM.tenant_id == tenant_id, DeviceORM.is_active.is_(True)
                )
            )
            device = result.scalars().first()
        if device is None:
            raise NoActiveDeviceError(
                f"No active device for tenant {tenant_id}", context={"tenant_id": tenant_id}
            )
        return device

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def endpoint(self, device: DeviceORM) -> DeviceEndpoint:
        return DeviceEndpoint(
            device_id=device.id,
            host=device.host,
            port=device.port,
            username=device.username,
            password=self.crypto.decrypt(device.encrypted_secret),
            use_tls=device.use_tls,
            timeout_seconds=device.timeout_seconds,
            queue_size=device.queue_size,
        )

    async def resolve_endpoint(self, device_id: str) -> DeviceEndpoint:
        """Endpoint for a device id regardless of tenant (subscription sessions, reconciler)."""
        async with self.db.session() as session:
            device = await session.get(DeviceORM, device_id)
        if device is None:
            raise NotFoundError(f"Device not found: {device_id}", context={"device_id": device_id})
        return self.endpoint(device)

    async def active_endpoint(self, tenant_id: str) -> DeviceEndpoint:
        return self.endpoint(await self.get_active(tenant_id))

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def resource(self, tenant_id: str, device_id: str) -> dict[str, str]:
        """``/system/resource/print`` on a device (liveness)."""
        endpoint = self.endpoint(await self._get_orm(tenant_id, device_id))
        async with self.pool.borrow(endpoint) as connection:
            return await CommandExecutor(connection).system_resource()

    async def ping_once(self, tenant_id: str, device_id: str, address: str) -> PingResult:
        """Run a three-packet ping from the device and summarise it.

        Raises:
            ValidationError: ``address`` is empty
        """
        if not address:
            raise ValidationError("address is required")

        endpoint = self.endpoint(await self._get_orm(tenant_id, device_id))
        async with self.pool.borrow(endpoint) as connection:
            records = await CommandExecutor(connection).run(
                "/ping", {"address": address, "count": ONE_SHOT_PING_COUNT}
            )

        totals = next((r for r in reversed(records) if "sent" in r), {})
        packet_loss = totals.get("packet-loss", "")
        return PingResult(
            target=address,
            sent=int(totals.get("sent") or 0),
            received=int(totals.get("received") or 0),
            packet_loss=f"{packet_loss}%" if packet_loss else "",
            avg_rtt=totals.get("avg-rtt", ""),
            min_rtt=totals.get("min-rtt", ""),
            max_rtt=totals.get("max-rtt", ""),
            is_reachable=is_reachable(packet_loss),
        )

    async def bootstrap(self) -> DeviceView | None:
        """Register the device configured through ``MIKROPS_DEVICE_*`` if it is not known yet."""
        settings = self.settings
        if not settings.device_host or settings.device_password is None:
            return None

        tenant_id = settings.device_tenant_id
        async with self.db.session() as session:
            result = await session.execute(
                select(DeviceORM).where(
                    DeviceORM.tenant_id == tenant_id,
                    DeviceORM.host == settings.device_host,
                    DeviceORM.port == settings.device_port,
                )
            )
            existing = result.scalar_one_or_none()
            has_active = (
                await session.execute(
                    select(DeviceORM.id).where(
                        DeviceORM.tenant_id == tenant_id, DeviceORM.is_active.is_(True)
                    )
                )
            ).first() is not None

        if existing is not None:
            return DeviceView.model_validate(existing)

        return await self.register(
            tenant_id,
            DeviceCreate(
                name=settings.device_host,
                host=settings.device_host,
                port=settings.device_port,
                username=settings.device_username,
                password=settings.device_password,
                activate=not has_active,
            ),
        )
