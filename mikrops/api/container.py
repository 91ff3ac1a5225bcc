"""Service container: constructs and owns every long-lived collaborator.

One container per process (and per test). Routes reach it through
``request.app.state.container``; nothing below the HTTP layer looks up
module-level singletons.
"""

import logging
from dataclasses import dataclass, field

from mikrops.config import Settings
from mikrops.domain.services.customer import CustomerService
from mikrops.domain.services.device import DeviceService
from mikrops.domain.services.ppp import PPPSessionService
from mikrops.domain.services.profile import ProfileService
from mikrops.domain.services.queue import SimpleQueueService
from mikrops.domain.services.write_through import WriteThroughCoordinator
from mikrops.infra.broker import (
    EventBroker,
    FanoutEventBroker,
    InProcessEventBroker,
    RedisEventBroker,
)
from mikrops.infra.db.session import DatabaseSessionManager
from mikrops.infra.jobs.scheduler import JobScheduler
from mikrops.infra.routeros.connection import RouterOSConnection
from mikrops.infra.routeros.pool import (
    ConnectionFactory,
    ConnectionPool,
    DedicatedConnectionProvider,
)
from mikrops.security.auth import TokenValidator
from mikrops.security.crypto import CredentialEncryption
from mikrops.streams.multiplexer import StreamMultiplexer

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    db: DatabaseSessionManager
    crypto: CredentialEncryption
    pool: ConnectionPool
    broker: EventBroker
    local_broker: InProcessEventBroker
    devices: DeviceService
    write_through: WriteThroughCoordinator
    profiles: ProfileService
    customers: CustomerService
    ppp: PPPSessionService
    queues: SimpleQueueService
    multiplexer: StreamMultiplexer
    validator: TokenValidator
    scheduler: JobScheduler | None = None
    _started: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        connection_factory: ConnectionFactory = RouterOSConnection,
        broker: EventBroker | None = None,
        enable_scheduler: bool = True,
    ) -> "ServiceContainer":
        """Wire every collaborator from settings.

        Args:
            settings: Application settings
            connection_factory: RouterOS connection constructor (tests inject fakes)
            broker: Replace the configured external broker
            enable_scheduler: Start the periodic jobs
        """
        db = DatabaseSessionManager(settings)
        crypto = CredentialEncryption(settings.encryption_key or "", settings.environment)
        pool = ConnectionPool(
            tls_port=settings.device_tls_port,
            verify_tls=settings.device_verify_tls,
            reconnect_signatures=settings.reconnect_signatures,
            connection_factory=connection_factory,
        )

        local_broker = InProcessEventBroker()
        if broker is None and settings.bus_enabled:
            broker = RedisEventBroker(settings.bus_address, outbox_size=settings.bus_outbox_size)
        combined: EventBroker = (
            FanoutEventBroker(local_broker, broker) if broker is not None else local_broker
        )

        devices = DeviceService(db, pool, crypto, settings)
        multiplexer = StreamMultiplexer(
            DedicatedConnectionProvider(pool, devices.resolve_endpoint),
            combined,
            max_restarts=settings.subscription_max_restarts,
            restart_delay=settings.subscription_restart_delay,
            subscriber_queue_capacity=settings.subscription_subscriber_queue_capacity,
            reconnect_signatures=settings.reconnect_signatures,
        )
        devices.multiplexer = multiplexer

        write_through = WriteThroughCoordinator(db, pool)

        return cls(
            settings=settings,
            db=db,
            crypto=crypto,
            pool=pool,
            broker=combined,
            local_broker=local_broker,
            devices=devices,
            write_through=write_through,
            profiles=ProfileService(db, devices, write_through),
            customers=CustomerService(db, devices, write_through, crypto, combined),
            ppp=PPPSessionService(db, devices, combined),
            queues=SimpleQueueService(devices),
            multiplexer=multiplexer,
            validator=TokenValidator.from_settings(settings),
            scheduler=JobScheduler(settings) if enable_scheduler else None,
        )

    async def reconcile_orphans(self) -> dict[str, int]:
        return await self.write_through.reconcile_orphans(
            self.devices.resolve_endpoint,
            max_attempts=self.settings.reconciler_max_attempts,
        )

    async def start(self) -> None:
        """Open the database, start the broker and jobs, register the bootstrap device."""
        if self._started:
            return
        await self.db.init()
        await self.db.create_all()
        await self.broker.start()
        await self.devices.bootstrap()

        if self.scheduler is not None:
            self.scheduler.add_orphan_reconcile_job(self.reconcile_orphans)
            self.scheduler.add_ppp_sync_job(self.settings.device_tenant_id, self.ppp.sync_active)
            await self.scheduler.start()

        self._started = True
        logger.info("Service container started", extra={"environment": self.settings.environment})

    async def close(self) -> None:
        """Stop sessions, close device connections, flush the broker, close the database."""
        if not self._started:
            return
        self._started = False

        await self.multiplexer.shutdown()
        if self.scheduler is not None:
            await self.scheduler.shutdown()
        await self.pool.close_all()
        await self.broker.close()
        await self.db.close()
        logger.info("Service container closed")
