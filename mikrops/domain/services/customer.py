"""Customer service: PPPoE customers mirrored to ``/ppp/secret``.

Also handles the router's PPPoE up/down callbacks and resolves the live
subscription keys (traffic, ping) for a customer.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select

from mikrops.domain.exceptions import DuplicateResourceError, NotFoundError, ValidationError
from mikrops.domain.models import (
    Customer,
    CustomerCreate,
    CustomerStatus,
    CustomerUpdate,
    PPPoECallback,
)
from mikrops.domain.services.device import DeviceService
from mikrops.domain.services.write_through import (
    WriteThroughCoordinator,
    WriteThroughTransaction,
)
from mikrops.infra.broker import EventBroker
from mikrops.infra.db.models import Customer as CustomerORM
from mikrops.infra.db.models import Device as DeviceORM
from mikrops.infra.db.models import PPPProfile as ProfileORM
from mikrops.infra.db.session import DatabaseSessionManager
from mikrops.security.crypto import CredentialEncryption
from mikrops.streams.kinds import (
    CHANNEL_DEVICE_EVENTS,
    SubscriptionKey,
    ppp_active_channel,
    ppp_inactive_channel,
)

logger = logging.getLogger(__name__)

SECRET_PATH = "/ppp/secret"

DEFAULT_PING_COUNT = 3


def customer_interface(customer: CustomerORM) -> str:
    """Dynamic PPPoE interface of a customer (last reported, else RouterOS naming)."""
    return customer.interface or f"<pppoe-{customer.username}>"


def pppoe_event(customer: CustomerORM, status: str) -> dict[str, Any]:
    return {
        "type": "pppoe_event",
        "status": status,
        "customer_id": customer.id,
        "device_id": customer.device_id,
        "name": customer.username,
        "ip": customer.remote_address,
    }


class CustomerService:
    """PPPoE customer CRUD through the write-through path.

    Example:
        service = CustomerService(session_manager, devices, write_through, crypto, broker)

        customer = await service.create("default", CustomerCreate(
            username="alice", password="p", profile_id=profile.id, price=100000,
        ))
        assert customer.external_object_id is not None
    """

    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        devices: DeviceService,
        write_through: WriteThroughCoordinator,
        crypto: CredentialEncryption,
        broker: EventBroker | None = None,
    ) -> None:
        self.db = session_manager
        self.devices = devices
        self.write_through = write_through
        self.crypto = crypto
        self.broker = broker

    def _secret_args(self, customer: CustomerORM, profile: ProfileORM, password: str | None) -> dict[str, Any]:
        args: dict[str, Any] = {
            "name": customer.username,
            "profile": profile.name,
            "service": customer.service,
            "comment": customer.name or customer.username,
            "local-address": profile.local_address,
            "remote-address": profile.remote_address,
        }
        if password is not None:
            args["password"] = password
        return args

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _load(self, tenant_id: str, customer_id: str) -> CustomerORM:
        async with self.db.session() as session:
            result = await session.execute(
                select(CustomerORM).where(
                    CustomerORM.id == customer_id, CustomerORM.tenant_id == tenant_id
                )
            )
            customer = result.scalar_one_or_none()
        if customer is None:
            raise NotFoundError(
                f"Customer not found: {customer_id}",
                context={"tenant_id": tenant_id, "customer_id": customer_id},
            )
        return customer

    async def get(self, tenant_id: str, customer_id: str) -> Customer:
        return Customer.model_validate(await self._load(tenant_id, customer_id))

    async def list_customers(
        self,
        tenant_id: str,
        *,
        username: str | None = None,
        status: CustomerStatus | None = None,
    ) -> list[Customer]:
        stmt = select(CustomerORM).where(CustomerORM.tenant_id == tenant_id)
        if username is not None:
            stmt = stmt.where(CustomerORM.username == username)
        if status is not None:
            stmt = stmt.where(CustomerORM.status == status.value)
        async with self.db.session() as session:
            result = await session.execute(stmt.order_by(CustomerORM.username))
            return [Customer.model_validate(c) for c in result.scalars().all()]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, tenant_id: str, data: CustomerCreate) -> Customer:
        """Create the customer row and its ``/ppp/secret`` on the active device.

        Raises:
            NoActiveDeviceError: Tenant has no active device
            NotFoundError: Profile unknown on the active device
            DuplicateResourceError: Username taken (database or router)
        """
        device = await self.devices.get_active(tenant_id)

        async def create_customer(tx: WriteThroughTransaction) -> Customer:
            profile = (
                await tx.session.execute(
                    select(ProfileORM).where(
                        ProfileORM.id == data.profile_id,
                        ProfileORM.tenant_id == tenant_id,
                        ProfileORM.device_id == device.id,
                    )
                )
            ).scalar_one_or_none()
            if profile is None:
                raise NotFoundError(
                    f"Profile not found: {data.profile_id}",
                    context={"device_id": device.id, "profile_id": data.profile_id},
                )

            taken = await tx.session.execute(
                select(CustomerORM.id).where(
                    CustomerORM.device_id == device.id, CustomerORM.username == data.username
                )
            )
            if taken.first() is not None:
                raise DuplicateResourceError(
                    f"Customer {data.username!r} already exists",
                    context={"device_id": device.id, "username": data.username},
                )

            customer = CustomerORM(
                tenant_id=tenant_id,
                device_id=device.id,
                profile_id=profile.id,
                name=data.name,
                username=data.username,
                encrypted_password=self.crypto.encrypt(data.password),
                service=data.service,
                price=data.price,
                status=CustomerStatus.PENDING.value,
                external_object_id=None,
            )
            tx.session.add(customer)
            await tx.session.flush()

            customer.external_object_id = await tx.add(
                SECRET_PATH, self._secret_args(customer, profile, data.password)
            )
            await tx.session.flush()
            await tx.session.refresh(customer)
            return Customer.model_validate(customer)

        created = await self.write_through.run(self.devices.endpoint(device), create_customer)
        logger.info(
            "Customer created",
            extra={
                "tenant_id": tenant_id,
                "device_id": device.id,
                "customer_id": created.id,
                "object_id": created.external_object_id,
            },
        )
        return created

    async def update(self, tenant_id: str, customer_id: str, data: CustomerUpdate) -> Customer:
        """Update the row and ``set`` the secret by id (idempotent on the router)."""
        current = await self._load(tenant_id, customer_id)
        endpoint = await self.devices.resolve_endpoint(current.device_id)
        changes = data.model_dump(exclude_unset=True)

        async def update_customer(tx: WriteThroughTransaction) -> Customer:
            customer = await tx.session.get(CustomerORM, customer_id)
            if customer is None:
                raise NotFoundError(f"Customer not found: {customer_id}")

            if "username" in changes and changes["username"] != customer.username:
                clash = await tx.session.execute(
                    select(CustomerORM.id).where(
                        CustomerORM.device_id == customer.device_id,
                        CustomerORM.username == changes["username"],
                    )
                )
                if clash.first() is not None:
                    raise DuplicateResourceError(f"Customer {changes['username']!r} already exists")
                customer.username = changes["username"]

            if changes.get("profile_id"):
                profile = await tx.session.get(ProfileORM, changes["profile_id"])
                if profile is None or profile.device_id != customer.device_id:
                    raise NotFoundError(f"Profile not found: {changes['profile_id']}")
                customer.profile_id = profile.id
            else:
                profile = await tx.session.get(ProfileORM, customer.profile_id)
                if profile is None:
                    raise NotFoundError(f"Profile not found: {customer.profile_id}")

            password = changes.get("password")
            if password is not None:
                customer.encrypted_password = self.crypto.encrypt(password)
            for field in ("name", "price"):
                if field in changes:
                    setattr(customer, field, changes[field])
            await tx.session.flush()

            if customer.external_object_id:
                args = self._secret_args(customer, profile, password)
                await tx.set(SECRET_PATH, customer.external_object_id, args)
            else:
                args = self._secret_args(
                    customer, profile, self.crypto.decrypt(customer.encrypted_password)
                )
                customer.external_object_id = await tx.add(SECRET_PATH, args)
            await tx.session.flush()
            await tx.session.refresh(customer)
            return Customer.model_validate(customer)

        return await self.write_through.run(endpoint, update_customer)

    async def delete(self, tenant_id: str, customer_id: str) -> None:
        """Remove the secret from the router (missing is fine), then the row."""
        current = await self._load(tenant_id, customer_id)
        endpoint = await self.devices.resolve_endpoint(current.device_id)

        async def delete_customer(tx: WriteThroughTransaction) -> None:
            customer = await tx.session.get(CustomerORM, customer_id)
            if customer is None:
                return
            if customer.external_object_id:
                await tx.remove(SECRET_PATH, customer.external_object_id)
            await tx.session.delete(customer)

        await self.write_through.run(endpoint, delete_customer)
        logger.info(
            "Customer deleted", extra={"tenant_id": tenant_id, "customer_id": customer_id}
        )

    # ------------------------------------------------------------------
    # Router callbacks
    # ------------------------------------------------------------------

    async def _find_by_username(self, session: Any, tenant_id: str, username: str) -> CustomerORM:
        result = await session.execute(
            select(CustomerORM)
            .join(DeviceORM, DeviceORM.id == CustomerORM.device_id)
            .where(CustomerORM.tenant_id == tenant_id, CustomerORM.username == username)
            .order_by(DeviceORM.is_active.desc())
        )
        customer = result.scalars().first()
        if customer is None:
            raise NotFoundError(
                f"Customer not found: {username}",
                context={"tenant_id": tenant_id, "username": username},
            )
        return customer

    async def pppoe_up(self, tenant_id: str, callback: PPPoECallback) -> Customer:
        """Record a PPPoE session start reported by the router."""
        async with self.db.session() as session:
            customer = await self._find_by_username(session, tenant_id, callback.name)
            customer.status = CustomerStatus.ACTIVE.value
            customer.remote_address = callback.remote_address or customer.remote_address
            customer.caller_id = callback.caller_id or customer.caller_id
            customer.interface = callback.interface or customer.interface
            customer.last_online_at = datetime.now(UTC)
            await session.flush()
            await session.refresh(customer)
            view = Customer.model_validate(customer)
            event = pppoe_event(customer, "connected")

        self._publish(event, ppp_active_channel(tenant_id))
        logger.info(
            "PPPoE session up",
            extra={"tenant_id": tenant_id, "customer_id": view.id, "device_id": view.device_id},
        )
        return view

    async def pppoe_down(self, tenant_id: str, callback: PPPoECallback) -> Customer:
        """Record a PPPoE session end reported by the router."""
        async with self.db.session() as session:
            customer = await self._find_by_username(session, tenant_id, callback.name)
            customer.status = CustomerStatus.INACTIVE.value
            await session.flush()
            await session.refresh(customer)
            view = Customer.model_validate(customer)
            event = pppoe_event(customer, "disconnected")

        self._publish(event, ppp_inactive_channel(tenant_id))
        logger.info(
            "PPPoE session down",
            extra={"tenant_id": tenant_id, "customer_id": view.id, "device_id": view.device_id},
        )
        return view

    def _publish(self, event: dict[str, Any], tenant_channel: str) -> None:
        if self.broker is None:
            return
        self.broker.publish(CHANNEL_DEVICE_EVENTS, event)
        self.broker.publish(tenant_channel, event)

    # ------------------------------------------------------------------
    # Subscription keys
    # ------------------------------------------------------------------

    async def traffic_key(self, tenant_id: str, customer_id: str) -> SubscriptionKey:
        customer = await self._load(tenant_id, customer_id)
        return SubscriptionKey.traffic(customer.device_id, customer_interface(customer))

    async def ping_key(
        self, tenant_id: str, customer_id: str, count: int | None = DEFAULT_PING_COUNT
    ) -> SubscriptionKey:
        """Ping key for the customer's current IP.

        Raises:
            ValidationError: The customer has no known IP address
        """
        customer = await self._load(tenant_id, customer_id)
        if not customer.remote_address:
            raise ValidationError(
                f"Customer {customer.username!r} has no known IP address",
                context={"customer_id": customer_id},
            )
        return SubscriptionKey.ping(customer.device_id, customer.remote_address, count=count)
