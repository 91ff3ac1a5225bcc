"""Shared pytest fixtures.

These fixtures live at `tests/` scope so every unit test gets:
- Settings pointing at an in-memory SQLite database with a real Fernet key
- A FakeRouter standing in for the RouterOS device
- A started ServiceContainer wired to the FakeRouter (no scheduler)
"""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from fakes import TENANT, FakeRouter
from mikrops.api.container import ServiceContainer
from mikrops.config import Settings
from mikrops.domain.models import DeviceCreate


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_key=Fernet.generate_key().decode(),
        subscription_restart_delay=0.0,
        subscription_keepalive_interval=30.0,
        jwt_enabled=False,
    )


@pytest.fixture
def router() -> FakeRouter:
    return FakeRouter()


@pytest.fixture
async def container(settings: Settings, router: FakeRouter) -> ServiceContainer:
    services = ServiceContainer.build(
        settings, connection_factory=router.factory, enable_scheduler=False
    )
    await services.start()
    yield services
    await services.close()


@pytest.fixture
async def active_device(container: ServiceContainer):
    return await container.devices.register(
        TENANT,
        DeviceCreate(name="core-1", host="10.0.0.1", password="api-secret", activate=True),
    )
