"""Domain services for MikrOps.

Domain services encapsulate business logic and orchestrate operations
across persistence, RouterOS connections and the event broker.

Services in this package:
- DeviceService: Device registry, active-device invariant, probes
- ProfileService: PPP profiles mirrored to /ppp/profile
- CustomerService: PPPoE customers mirrored to /ppp/secret, router callbacks
- PPPSessionService: Live /ppp/active, inactive secrets and status reconciliation
- SimpleQueueService: Router-only /queue/simple management
- WriteThroughCoordinator: Database + device mutations as one transaction
"""

from mikrops.domain.services.customer import CustomerService
from mikrops.domain.services.device import DeviceService
from mikrops.domain.services.ppp import PPPSessionService
from mikrops.domain.services.profile import ProfileService
from mikrops.domain.services.queue import SimpleQueueService
from mikrops.domain.services.write_through import (
    WriteThroughCoordinator,
    WriteThroughTransaction,
)

__all__ = [
    "DeviceService",
    "ProfileService",
    "CustomerService",
    "PPPSessionService",
    "SimpleQueueService",
    "WriteThroughCoordinator",
    "WriteThroughTransaction",
]
