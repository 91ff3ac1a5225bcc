"""Domain models for MikrOps.

Pydantic models representing request DTOs and response views for the service
layer. These are separate from SQLAlchemy ORM models to maintain clean
separation between domain and infrastructure layers.
"""

import ipaddress
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class CustomerStatus(str, Enum):
    """Customer online state.

    - pending: created, never seen online
    - active: PPPoE session up (callback or /ppp/active sync)
    - inactive: PPPoE session down
    """

    PENDING = "pending"
    ACTIVE = "active"
    INACTIVE = "inactive"


def _validate_ip(v: str | None) -> str | None:
    if v is None or v == "":
        return None
    try:
        ipaddress.ip_address(v)
    except ValueError:
        raise ValueError(f"Invalid IP address: '{v}'. Must be a valid IPv4 or IPv6 address.")
    return v


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceCreate(BaseModel):
    """DTO for registering a RouterOS device."""

    name: str = Field(..., min_length=1, max_length=255, description="Human-friendly name")
    host: str = Field(..., min_length=1, description="API host name or IP")
    port: int = Field(default=8728, ge=1, le=65535, description="API port (8729 selects TLS)")
    username: str = Field(default="admin", min_length=1)
    password: str = Field(..., description="API password (stored encrypted)")
    use_tls: bool | None = Field(default=None, description="Pin TLS on/off; None selects by port")
    timeout_seconds: float | None = Field(default=None, gt=0, le=120)
    queue_size: int | None = Field(default=None, ge=1, le=10000)
    activate: bool = Field(default=False, description="Make this the tenant's active device")


class Device(BaseModel):
    """Device view (never carries the secret)."""

    id: str
    tenant_id: str
    name: str
    host: str
    port: int
    username: str
    use_tls: bool | None
    timeout_seconds: float
    queue_size: int
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# PPP profiles
# ---------------------------------------------------------------------------


class ProfileCreate(BaseModel):
    """DTO for creating a PPP profile on the active device."""

    name: str = Field(..., min_length=1, max_length=255)
    local_address: str | None = Field(default=None, description="Local (router side) address")
    remote_address: str | None = Field(default=None, description="Remote address or pool name")
    rate_limit: str | None = Field(default=None, description="RouterOS rate-limit, e.g. 10M/10M")
    price: int = Field(default=0, ge=0)

    @field_validator("local_address")
    @classmethod
    def validate_local_address(cls, v: str | None) -> str | None:
        return _validate_ip(v)


class ProfileUpdate(BaseModel):
    """DTO for updating a PPP profile; unset fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    local_address: str | None = None
    remote_address: str | None = None
    rate_limit: str | None = None
    price: int | None = Field(default=None, ge=0)

    @field_validator("local_address")
    @classmethod
    def validate_local_address(cls, v: str | None) -> str | None:
        return _validate_ip(v)


class Profile(BaseModel):
    id: str
    tenant_id: str
    device_id: str
    name: str
    local_address: str | None
    remote_address: str | None
    rate_limit: str | None
    price: int
    external_object_id: str | None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Customers (PPPoE secrets)
# ---------------------------------------------------------------------------


class CustomerCreate(BaseModel):
    """DTO for creating a PPPoE customer.

    Example:
        CustomerCreate(username="alice", password="p", profile_id=profile.id, price=100000)
    """

    username: str = Field(..., min_length=1, max_length=255, description="PPP secret name")
    password: str = Field(..., min_length=1, description="PPP secret password")
    profile_id: str = Field(..., description="PPP profile id")
    name: str | None = Field(default=None, max_length=255, description="Display name")
    price: int = Field(default=0, ge=0)
    service: Literal["pppoe", "any"] = Field(default="pppoe")

    @field_validator("username")
    @classmethod
    def validate_username(cls, v: str) -> str:
        if any(c.isspace() for c in v):
            raise ValueError("username must not contain whitespace")
        return v


class CustomerUpdate(BaseModel):
    """DTO for updating a PPPoE customer; unset fields are left unchanged."""

    username: str | None = Field(default=None, min_length=1, max_length=255)
    password: str | None = Field(default=None, min_length=1)
    profile_id: str | None = None
    name: str | None = Field(default=None, max_length=255)
    price: int | None = Field(default=None, ge=0)


class Customer(BaseModel):
    """Customer view (never carries the password)."""

    id: str
    tenant_id: str
    device_id: str
    profile_id: str
    name: str | None
    username: str
    service: str
    price: int
    status: CustomerStatus
    interface: str | None
    remote_address: str | None
    caller_id: str | None
    last_online_at: datetime | None
    external_object_id: str | None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Router callbacks and PPP active sessions
# ---------------------------------------------------------------------------


class PPPoECallback(BaseModel):
    """Body posted by the router's on-up/on-down PPP profile scripts."""

    name: str = Field(..., min_length=1, description="PPP user name")
    caller_id: str | None = None
    interface: str | None = None
    local_address: str | None = None
    remote_address: str | None = None
    service: str | None = None


class ActiveSession(BaseModel):
    """One ``/ppp/active`` entry as reported by the router."""

    id: str = Field(default="", alias=".id")
    name: str
    service: str = ""
    caller_id: str = Field(default="", alias="caller-id")
    address: str = ""
    uptime: str = ""

    model_config = {"populate_by_name": True}


def _router_bool(v: object) -> bool:
    if isinstance(v, str):
        return v.lower() in ("true", "yes")
    return bool(v)


class InactiveSecret(BaseModel):
    """A ``/ppp/secret`` with no matching ``/ppp/active`` entry."""

    id: str = Field(default="", alias=".id")
    name: str
    service: str = ""
    profile: str = ""
    remote_address: str = Field(default="", alias="remote-address")
    last_logged_out: str = Field(default="", alias="last-logged-out")
    disabled: bool = False

    model_config = {"populate_by_name": True}

    @field_validator("disabled", mode="before")
    @classmethod
    def parse_disabled(cls, v: object) -> bool:
        return _router_bool(v)


class SyncReport(BaseModel):
    """Result of reconciling customer status with ``/ppp/active``."""

    online: int
    activated: list[str] = Field(default_factory=list)
    deactivated: list[str] = Field(default_factory=list)
    unknown: list[str] = Field(default_factory=list, description="Active names with no customer")


class PingResult(BaseModel):
    """One-shot ping summary (``/ping count=3``)."""

    target: str
    sent: int
    received: int
    packet_loss: str
    avg_rtt: str
    min_rtt: str
    max_rtt: str
    is_reachable: bool


# ---------------------------------------------------------------------------
# Simple queues (router-only, not mirrored in the database)
# ---------------------------------------------------------------------------


class SimpleQueueCreate(BaseModel):
    """DTO for adding a ``/queue/simple`` entry.

    Example:
        SimpleQueueCreate(name="alice", target="10.10.0.2/32", max_limit="10M/10M")
    """

    name: str = Field(..., min_length=1, max_length=255)
    target: str = Field(..., min_length=1, description="Address, subnet or interface")
    max_limit: str = Field(..., min_length=1, description="upload/download, e.g. 10M/10M")
    limit_at: str | None = None
    priority: str | None = Field(default=None, description="upload/download priority, e.g. 8/8")
    comment: str | None = None

    def router_args(self) -> dict[str, str | None]:
        return {
            "name": self.name,
            "target": self.target,
            "max-limit": self.max_limit,
            "limit-at": self.limit_at,
            "priority": self.priority,
            "comment": self.comment,
        }


class SimpleQueueUpdate(BaseModel):
    """DTO for changing a simple queue; unset fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=255)
    target: str | None = None
    max_limit: str | None = None
    limit_at: str | None = None
    priority: str | None = None
    comment: str | None = None
    disabled: bool | None = None

    def router_args(self) -> dict[str, object]:
        names = {"max_limit": "max-limit", "limit_at": "limit-at"}
        return {
            names.get(field, field): value
            for field, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


class SimpleQueue(BaseModel):
    """One ``/queue/simple`` entry as reported by the router."""

    id: str = Field(default="", alias=".id")
    name: str
    target: str = ""
    max_limit: str = Field(default="", alias="max-limit")
    limit_at: str = Field(default="", alias="limit-at")
    priority: str = ""
    comment: str = ""
    disabled: bool = False

    model_config = {"populate_by_name": True}

    @field_validator("disabled", mode="before")
    @classmethod
    def parse_disabled(cls, v: object) -> bool:
        return _router_bool(v)
