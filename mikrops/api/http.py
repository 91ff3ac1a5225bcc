"""HTTP API for the MikrOps service.

Exposes the minimum REST surface driving the core (devices, PPP profiles,
customers, PPP active and inactive sessions, simple queues, router callbacks)
plus health, metrics and the WebSocket streams from :mod:`mikrops.api.websocket`.

Errors from the domain and RouterOS layers are mapped to a status code once,
here, and logged once. The body is always ``{"error": message, "kind": kind}``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from mikrops import __version__
from mikrops.api.container import ServiceContainer
from mikrops.api.websocket import router as websocket_router
from mikrops.config import Settings
from mikrops.domain.exceptions import DomainError, ErrorKind, error_kind
from mikrops.domain.models import (
    ActiveSession,
    Customer,
    CustomerCreate,
    CustomerStatus,
    CustomerUpdate,
    Device,
    DeviceCreate,
    InactiveSecret,
    PingResult,
    PPPoECallback,
    Profile,
    ProfileCreate,
    ProfileUpdate,
    SimpleQueue,
    SimpleQueueCreate,
    SimpleQueueUpdate,
    SyncReport,
)
from mikrops.infra.observability import get_metrics_text
from mikrops.infra.observability.logging import get_correlation_id, set_correlation_id
from mikrops.infra.routeros.exceptions import RouterOSError
from mikrops.security.auth import TenantContext, extract_bearer_token

logger = logging.getLogger(__name__)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION: 422,
    ErrorKind.AUTH: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NO_ACTIVE_DEVICE: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSPORT: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.TRANSPORT_LOST: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.QUEUE_FULL: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: BaseException) -> int:
    """HTTP status for an error kind; anything unmapped (duplicates included) is a 500."""
    return STATUS_BY_KIND.get(error_kind(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(exc: BaseException) -> JSONResponse:
    kind = error_kind(exc)
    code = status_for(exc)
    message = getattr(exc, "message", None) or str(exc)
    headers = {"WWW-Authenticate": "Bearer"} if kind == ErrorKind.AUTH else None
    return JSONResponse({"error": message, "kind": kind.value}, status_code=code, headers=headers)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_tenant(
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> TenantContext:
    """Resolve the caller's tenant from the bearer token (or the default tenant)."""
    token = extract_bearer_token(request.headers.get("Authorization"))
    return container.validator.validate(token)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_http_app(settings: Settings, container: ServiceContainer | None = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        settings: Application settings
        container: Pre-built container (tests); built from settings otherwise

    Returns:
        FastAPI application whose lifespan starts and closes the container
    """
    services = container or ServiceContainer.build(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await services.start()
        try:
            yield
        finally:
            await services.close()

    app = FastAPI(
        title="MikrOps",
        description="RouterOS PPPoE back-office and live device streams",
        version=__version__,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.container = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next: Any) -> Any:
        """Add correlation ID to request context."""
        correlation_id = request.headers.get("X-Correlation-ID", get_correlation_id())
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        response = error_response(exc)
        log = logger.error if response.status_code >= 500 else logger.warning
        log(
            f"{request.method} {request.url.path} failed: {exc.message}",
            extra={
                "kind": error_kind(exc).value,
                "device_id": exc.context.get("device_id"),
                "tenant_id": exc.context.get("tenant_id"),
            },
        )
        return response

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{field}: {first.get('msg', 'invalid request')}" if field else "invalid request"
        return JSONResponse(
            {"error": message, "kind": ErrorKind.VALIDATION.value, "details": jsonable_encoder(errors)},
            status_code=422,
        )

    @app.exception_handler(RouterOSError)
    async def routeros_error_handler(request: Request, exc: RouterOSError) -> JSONResponse:
        response = error_response(exc)
        logger.error(
            f"{request.method} {request.url.path} failed on device: {exc}",
            extra={"kind": error_kind(exc).value},
        )
        return response

    # ------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health_check() -> dict[str, Any]:
        return {
            "status": "healthy",
            "environment": settings.environment,
            "version": __version__,
        }

    @app.get("/metrics")
    async def metrics() -> PlainTextResponse:
        """Prometheus metrics endpoint."""
        return PlainTextResponse(get_metrics_text())

    @app.get("/streams/stats")
    async def stream_stats(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> dict[str, Any]:
        return {**c.multiplexer.get_stats(), "pool": c.pool.stats()}

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @app.post("/devices", status_code=status.HTTP_201_CREATED)
    async def register_device(
        body: DeviceCreate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Device:
        return await c.devices.register(tenant.tenant_id, body)

    @app.get("/devices")
    async def list_devices(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[Device]:
        return await c.devices.list_devices(tenant.tenant_id)

    @app.post("/devices/{device_id}/activate")
    async def activate_device(
        device_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Device:
        return await c.devices.activate(tenant.tenant_id, device_id)

    @app.get("/devices/{device_id}/resource")
    async def device_resource(
        device_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> dict[str, str]:
        return await c.devices.resource(tenant.tenant_id, device_id)

    @app.get("/devices/{device_id}/ping")
    async def device_ping(
        device_id: str,
        address: str = Query(..., min_length=1),
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> PingResult:
        return await c.devices.ping_once(tenant.tenant_id, device_id, address)

    # ------------------------------------------------------------------
    # PPP profiles
    # ------------------------------------------------------------------

    @app.post("/profiles", status_code=status.HTTP_201_CREATED)
    async def create_profile(
        body: ProfileCreate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Profile:
        return await c.profiles.create(tenant.tenant_id, body)

    @app.get("/profiles")
    async def list_profiles(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[Profile]:
        return await c.profiles.list_profiles(tenant.tenant_id)

    @app.put("/profiles/{profile_id}")
    async def update_profile(
        profile_id: str,
        body: ProfileUpdate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Profile:
        return await c.profiles.update(tenant.tenant_id, profile_id, body)

    @app.delete("/profiles/{profile_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_profile(
        profile_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Response:
        await c.profiles.delete(tenant.tenant_id, profile_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    @app.post("/customers", status_code=status.HTTP_201_CREATED)
    async def create_customer(
        body: CustomerCreate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Customer:
        return await c.customers.create(tenant.tenant_id, body)

    @app.get("/customers")
    async def list_customers(
        username: str | None = None,
        customer_status: CustomerStatus | None = Query(default=None, alias="status"),
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[Customer]:
        return await c.customers.list_customers(
            tenant.tenant_id, username=username, status=customer_status
        )

    @app.get("/customers/{customer_id}")
    async def get_customer(
        customer_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Customer:
        return await c.customers.get(tenant.tenant_id, customer_id)

    @app.put("/customers/{customer_id}")
    async def update_customer(
        customer_id: str,
        body: CustomerUpdate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Customer:
        return await c.customers.update(tenant.tenant_id, customer_id, body)

    @app.delete("/customers/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_customer(
        customer_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Response:
        await c.customers.delete(tenant.tenant_id, customer_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Simple queues (router only)
    # ------------------------------------------------------------------

    @app.get("/queues")
    async def list_queues(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[SimpleQueue]:
        return await c.queues.list_queues(tenant.tenant_id)

    @app.post("/queues", status_code=status.HTTP_201_CREATED)
    async def create_queue(
        body: SimpleQueueCreate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> SimpleQueue:
        return await c.queues.create(tenant.tenant_id, body)

    @app.get("/queues/{queue_id}")
    async def get_queue(
        queue_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> SimpleQueue:
        return await c.queues.get(tenant.tenant_id, queue_id)

    @app.put("/queues/{queue_id}")
    async def update_queue(
        queue_id: str,
        body: SimpleQueueUpdate,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> SimpleQueue:
        return await c.queues.update(tenant.tenant_id, queue_id, body)

    @app.delete("/queues/{queue_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_queue(
        queue_id: str,
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> Response:
        await c.queues.delete(tenant.tenant_id, queue_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # PPP active sessions and router callbacks
    # ------------------------------------------------------------------

    @app.get("/ppp/active")
    async def list_ppp_active(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[ActiveSession]:
        return await c.ppp.list_active(tenant.tenant_id)

    @app.get("/ppp/inactive")
    async def list_ppp_inactive(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> list[InactiveSecret]:
        return await c.ppp.list_inactive(tenant.tenant_id)

    @app.post("/ppp/active/sync")
    async def sync_ppp_active(
        tenant: TenantContext = Depends(get_tenant),
        c: ServiceContainer = Depends(get_container),
    ) -> SyncReport:
        return await c.ppp.sync_active(tenant.tenant_id)

    @app.post("/callbacks/{tenant_id}/pppoe/up")
    async def pppoe_up(
        tenant_id: str,
        body: PPPoECallback,
        c: ServiceContainer = Depends(get_container),
    ) -> dict[str, str]:
        customer = await c.customers.pppoe_up(tenant_id, body)
        return {"status": "ok", "customer_id": customer.id}

    @app.post("/callbacks/{tenant_id}/pppoe/down")
    async def pppoe_down(
        tenant_id: str,
        body: PPPoECallback,
        c: ServiceContainer = Depends(get_container),
    ) -> dict[str, str]:
        customer = await c.customers.pppoe_down(tenant_id, body)
        return {"status": "ok", "customer_id": customer.id}

    app.include_router(websocket_router)

    return app


__all__ = ["create_http_app", "get_container", "get_tenant", "status_for", "error_response"]
