"""Simple queues (``/queue/simple``) on the tenant's active device.

Queues live on the router only; nothing is mirrored to the database, so every
call goes straight through a borrowed pool connection.
"""

import logging

from mikrops.domain.models import SimpleQueue, SimpleQueueCreate, SimpleQueueUpdate
from mikrops.domain.services.device import DeviceService
from mikrops.infra.routeros.executor import CommandExecutor

logger = logging.getLogger(__name__)

QUEUE_PATH = "/queue/simple"


class SimpleQueueService:
    def __init__(self, devices: DeviceService) -> None:
        self.devices = devices

    async def list_queues(self, tenant_id: str) -> list[SimpleQueue]:
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            rows = await CommandExecutor(connection).print(QUEUE_PATH)
        return [SimpleQueue.model_validate(row) for row in rows if row.get("name")]

    async def get(self, tenant_id: str, queue_id: str) -> SimpleQueue:
        """Fetch one queue by RouterOS id.

        Raises:
            RouterOSNotFoundError: No queue with that id
        """
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            row = await CommandExecutor(connection).get(QUEUE_PATH, queue_id)
        return SimpleQueue.model_validate(row)

    async def create(self, tenant_id: str, data: SimpleQueueCreate) -> SimpleQueue:
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            executor = CommandExecutor(connection)
            queue_id = await executor.add(QUEUE_PATH, data.router_args())
            row = await executor.get(QUEUE_PATH, queue_id)

        logger.info(
            "Simple queue created",
            extra={"tenant_id": tenant_id, "queue": data.name, "object_id": queue_id},
        )
        return SimpleQueue.model_validate(row)

    async def update(self, tenant_id: str, queue_id: str, data: SimpleQueueUpdate) -> SimpleQueue:
        """Apply the set fields, then return the router's view of the queue."""
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            executor = CommandExecutor(connection)
            args = data.router_args()
            if args:
                await executor.set(QUEUE_PATH, queue_id, args)
            row = await executor.get(QUEUE_PATH, queue_id)
        return SimpleQueue.model_validate(row)

    async def delete(self, tenant_id: str, queue_id: str) -> None:
        """Remove a queue.

        Raises:
            RouterOSNotFoundError: No queue with that id
        """
        endpoint = await self.devices.active_endpoint(tenant_id)
        async with self.devices.pool.borrow(endpoint) as connection:
            await CommandExecutor(connection).remove(QUEUE_PATH, queue_id, missing_ok=False)
        logger.info("Simple queue removed", extra={"tenant_id": tenant_id, "object_id": queue_id})
