"""PPP active sessions: live ``/ppp/active`` view and status reconciliation.

The router's active list is authoritative for customer online status. Router
callbacks update status as hints between syncs; :meth:`PPPSessionService.sync_active`
overwrites whatever the callbacks left behind.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select

from mikrops.domain.models import ActiveSession, CustomerStatus, InactiveSecret, SyncReport
from mikrops.domain.services.customer import SECRET_PATH, pppoe_event
from mikrops.domain.services.device import DeviceService
from mikrops.infra.broker import EventBroker
from mikrops.infra.db.models import Customer as CustomerORM
from mikrops.infra.db.session import DatabaseSessionManager
from mikrops.infra.routeros.executor import CommandExecutor
from mikrops.streams.kinds import CHANNEL_DEVICE_EVENTS, ppp_active_channel, ppp_inactive_channel

logger = logging.getLogger(__name__)

ACTIVE_PATH = "/ppp/active"


class PPPSessionService:
    def __init__(
        self,
        session_manager: DatabaseSessionManager,
        devices: DeviceService,
        broker: EventBroker | None = None,
    ) -> None:
        self.db = session_manager
        self.devices = devices
        self.broker = broker

    async def list_active(self, tenant_id: str) -> list[ActiveSession]:
        """Live ``/ppp/active/print`` on the tenant's active device."""
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            rows = await CommandExecutor(connection).print(ACTIVE_PATH)
        return [ActiveSession.model_validate(row) for row in rows if row.get("name")]

    async def list_inactive(self, tenant_id: str) -> list[InactiveSecret]:
        """PPP secrets on the active device with no session in ``/ppp/active``."""
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            executor = CommandExecutor(connection)
            secrets = await executor.print(SECRET_PATH)
            online = {row.get("name") for row in await executor.print(ACTIVE_PATH)}
        return [
            InactiveSecret.model_validate(row)
            for row in secrets
            if row.get("name") and row["name"] not in online
        ]

    async def sync_active(self, tenant_id: str) -> SyncReport:
        """Make customer status match the router's active list.

        Customers present in ``/ppp/active`` become active (address and
        caller id refreshed); customers marked active but absent become
        inactive. Each change is published like a router callback.
        """
        device = await self.devices.get_active(tenant_id)
        sessions = {s.name: s for s in await self.list_active(tenant_id)}

        report = SyncReport(online=len(sessions))
        events: list[tuple[str, dict]] = []
        now = datetime.now(UTC)

        async with self.db.session() as session:
            result = await session.execute(
                select(CustomerORM).where(
                    CustomerORM.tenant_id == tenant_id, CustomerORM.device_id == device.id
                )
            )
            customers = {c.username: c for c in result.scalars().all()}

            for username, customer in customers.items():
                active = sessions.get(username)
                if active is not None:
                    changed = customer.status != CustomerStatus.ACTIVE.value
                    customer.status = CustomerStatus.ACTIVE.value
                    customer.remote_address = active.address or customer.remote_address
                    customer.caller_id = active.caller_id or customer.caller_id
                    customer.last_online_at = now
                    if changed:
                        report.activated.append(username)
                        events.append((ppp_active_channel(tenant_id), pppoe_event(customer, "connected")))
                elif customer.status == CustomerStatus.ACTIVE.value:
                    customer.status = CustomerStatus.INACTIVE.value
                    report.deactivated.append(username)
                    events.append((ppp_inactive_channel(tenant_id), pppoe_event(customer, "disconnected")))

            report.unknown = sorted(set(sessions) - set(customers))

        if self.broker is not None:
            for channel, event in events:
                self.broker.publish(CHANNEL_DEVICE_EVENTS, event)
                self.broker.publish(channel, event)

        logger.info(
            "PPP active sessions synced",
            extra={
                "tenant_id": tenant_id,
                "device_id": device.id,
                "online": report.online,
                "activated": len(report.activated),
                "deactivated": len(report.deactivated),
            },
        )
        return report
