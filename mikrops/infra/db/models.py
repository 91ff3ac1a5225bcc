"""SQLAlchemy ORM models for the MikrOps service.

All models support both SQLite (development, tests) and PostgreSQL (production).

Design Principles:
- Domain models are kept separate (no SQLAlchemy in mikrops/domain/models.py)
- All timestamps use timezone-aware datetime
- Secrets are stored Fernet-encrypted, never in plaintext
- Mirrored resources carry the RouterOS object id in ``external_object_id``
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models.

    Provides:
    - Async attribute loading via AsyncAttrs
    - Common timestamp fields (created_at, updated_at)
    - Utility methods for dict conversion and repr
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="Record creation timestamp",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        comment="Record last update timestamp",
    )

    def to_dict(self) -> dict[str, Any]:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        pk_value = getattr(self, "id", None)
        return f"<{class_name}(id={pk_value})>"


class Device(Base):
    """RouterOS device entity.

    Exactly one device per tenant is active at a time; the active flag is only
    changed by ``DeviceService.activate``.
    """

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, comment="Human-friendly name")

    host: Mapped[str] = mapped_column(String(255), nullable=False, comment="API host or IP")

    port: Mapped[int] = mapped_column(Integer, nullable=False, default=8728)

    username: Mapped[str] = mapped_column(String(255), nullable=False)

    encrypted_secret: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Fernet-encrypted API password"
    )

    use_tls: Mapped[bool | None] = mapped_column(
        Boolean, nullable=True, comment="Pin TLS on/off; NULL selects by port"
    )

    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=10.0)

    queue_size: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    profiles: Mapped[list["PPPProfile"]] = relationship(
        "PPPProfile",
        back_populates="device",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    customers: Mapped[list["Customer"]] = relationship(
        "Customer",
        back_populates="device",
        cascade="all, delete-orphan",
        lazy="noload",
    )

    __table_args__ = (Index("idx_device_tenant_active", "tenant_id", "is_active"),)


class PPPProfile(Base):
    """PPP profile mirrored to ``/ppp/profile``."""

    __tablename__ = "ppp_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    device_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    local_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    remote_address: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Remote address or IP pool name"
    )

    rate_limit: Mapped[str | None] = mapped_column(
        String(128), nullable=True, comment="RouterOS rate-limit, e.g. 10M/10M"
    )

    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    external_object_id: Mapped[str | None] = mapped_column(
        String(32), nullable=True, comment="RouterOS .id; NULL while pending"
    )

    device: Mapped["Device"] = relationship("Device", back_populates="profiles")

    __table_args__ = (UniqueConstraint("device_id", "name", name="uq_profile_device_name"),)


class Customer(Base):
    """PPPoE customer mirrored to ``/ppp/secret``."""

    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    device_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    profile_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("ppp_profiles.id", ondelete="RESTRICT"),
        nullable=False,
    )

    name: Mapped[str | None] = mapped_column(String(255), nullable=True, comment="Display name")

    username: Mapped[str] = mapped_column(String(255), nullable=False, comment="PPP secret name")

    encrypted_password: Mapped[str] = mapped_column(Text, nullable=False)

    service: Mapped[str] = mapped_column(String(32), nullable=False, default="pppoe")

    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="pending", comment="pending/active/inactive"
    )

    interface: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="Last dynamic interface, e.g. <pppoe-alice>"
    )

    remote_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    caller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    last_online_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    external_object_id: Mapped[str | None] = mapped_column(
        String(32), nullable=True, comment="RouterOS .id; NULL while pending"
    )

    device: Mapped["Device"] = relationship("Device", back_populates="customers")

    profile: Mapped["PPPProfile"] = relationship("PPPProfile", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("device_id", "username", name="uq_customer_device_username"),
        Index("idx_customer_tenant_status", "tenant_id", "status"),
    )


class OrphanedObject(Base):
    """RouterOS object left behind by a failed write-through compensation."""

    __tablename__ = "orphaned_objects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)

    device_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    path: Mapped[str] = mapped_column(String(128), nullable=False, comment="Menu, e.g. /ppp/secret")

    object_id: Mapped[str] = mapped_column(String(32), nullable=False)

    reason: Mapped[str] = mapped_column(Text, nullable=False)

    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_orphan_pending", "resolved_at", "device_id"),)
