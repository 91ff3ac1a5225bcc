"""Configuration module for the MikrOps service.

Implements Pydantic v2 Settings for configuration management with support for:
- Environment variables (MIKROPS_* prefix)
- YAML/TOML configuration files with nested sections
- Command-line argument overrides
- Fail-fast validation at startup

Configuration priority (later overrides earlier):
1. Built-in defaults
2. Configuration file (YAML/TOML)
3. Environment variables
4. Command-line arguments
"""

import os
import warnings
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "MIKROPS_"

DEFAULT_RECONNECT_SIGNATURES = [
    "loop has ended",
    "closed network connection",
    "broken pipe",
    "use of closed network connection",
    "EOF",
]


class Settings(BaseSettings):
    """Application configuration with sensible defaults.

    Example:
        # Load from environment only
        settings = Settings()

        # Load from config file
        settings = load_settings_from_file("config/prod.yaml")

        # Override specific values
        settings = Settings(environment="prod", jwt_secret="...")
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Application Settings
    # ========================================

    environment: Literal["lab", "staging", "prod"] = Field(
        default="lab", description="Deployment environment"
    )

    debug: bool = Field(default=False, description="Enable debug mode with verbose logging")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    log_format: Literal["json", "text"] = Field(default="json", description="Log output format")

    # ========================================
    # HTTP Server
    # ========================================

    server_host: str = Field(
        default="127.0.0.1",
        description="HTTP server bind address (0.0.0.0 for all interfaces)",
    )

    server_port: int = Field(default=8080, ge=1, le=65535, description="HTTP server port")

    server_read_timeout: float = Field(
        default=15.0, gt=0, le=300, description="Keep-alive read timeout in seconds"
    )

    server_write_timeout: float = Field(
        default=10.0, gt=0, le=300, description="WebSocket frame write deadline in seconds"
    )

    server_shutdown_timeout: float = Field(
        default=15.0, ge=0, le=300, description="Grace period for draining connections"
    )

    # ========================================
    # Database Configuration
    # ========================================

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mikrops.db",
        description="Database connection URL (SQLite or PostgreSQL)",
    )

    database_pool_size: int = Field(
        default=5, ge=1, le=100, description="Database connection pool size"
    )

    database_max_overflow: int = Field(
        default=10, ge=0, le=100, description="Max overflow connections beyond pool size"
    )

    database_echo: bool = Field(
        default=False, description="Echo SQL statements to logs (debug only)"
    )

    # ========================================
    # RouterOS Devices
    # ========================================

    device_default_timeout: float = Field(
        default=10.0, ge=1.0, le=120.0, description="Dial and reply timeout for new devices"
    )

    device_default_queue: int = Field(
        default=100, ge=1, le=10000, description="Command backlog per device connection"
    )

    device_tls_port: int = Field(
        default=8729, ge=1, le=65535, description="Port that selects API-SSL"
    )

    device_verify_tls: bool = Field(
        default=True,
        description="Verify RouterOS API-SSL certificates. "
        "Set to False for self-signed certificates (lab environments only)",
    )

    device_host: str | None = Field(
        default=None, description="Bootstrap device host registered at startup"
    )

    device_port: int = Field(default=8728, ge=1, le=65535, description="Bootstrap device port")

    device_username: str = Field(default="admin", description="Bootstrap device API user")

    device_password: str | None = Field(default=None, description="Bootstrap device API password")

    device_tenant_id: str = Field(default="default", description="Tenant of the bootstrap device")

    reconnect_signatures: list[str] = Field(
        default_factory=lambda: list(DEFAULT_RECONNECT_SIGNATURES),
        description="Error substrings classified as recoverable transport loss",
    )

    # ========================================
    # Subscriptions
    # ========================================

    subscription_max_restarts: int = Field(
        default=3, ge=0, le=100, description="Broken reopens before a session gives up"
    )

    subscription_restart_delay: float = Field(
        default=5.0, ge=0, le=300, description="Delay before reopening a broken session"
    )

    subscription_subscriber_queue_capacity: int = Field(
        default=50, ge=1, le=10000, description="Per-subscriber buffer size"
    )

    subscription_keepalive_interval: float = Field(
        default=30.0, gt=0, le=3600, description="WebSocket keepalive ping interval"
    )

    # ========================================
    # Event Bus
    # ========================================

    bus_enabled: bool = Field(default=False, description="Publish events to Redis")

    bus_address: str = Field(
        default="redis://localhost:6379/0", description="Redis URL for the event bus"
    )

    bus_outbox_size: int = Field(
        default=1000, ge=1, le=100000, description="Pending publishes before dropping"
    )

    # ========================================
    # Authentication
    # ========================================

    jwt_enabled: bool = Field(default=False, description="Require JWT bearer tokens")

    jwt_secret: str | None = Field(default=None, description="HMAC secret for JWT validation")

    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = Field(
        default="HS256", description="JWT signature algorithm"
    )

    jwt_tenant_claim: str = Field(default="tenant_id", description="Claim carrying the tenant")

    default_tenant_id: str = Field(
        default="default", description="Tenant used when authentication is disabled"
    )

    # ========================================
    # Security & Encryption
    # ========================================

    encryption_key: str | None = Field(
        default=None,
        description="Fernet key for device secrets and PPP passwords (base64, 32 bytes)",
    )

    # ========================================
    # Background Jobs
    # ========================================

    reconciler_interval_seconds: int = Field(
        default=300, ge=10, le=86400, description="Orphaned RouterOS object reconcile interval"
    )

    reconciler_max_attempts: int = Field(
        default=10, ge=1, le=1000, description="Retries before an orphan is left to operators"
    )

    ppp_sync_interval_seconds: int = Field(
        default=0, ge=0, le=86400, description="Periodic /ppp/active sync interval (0 disables)"
    )

    # ========================================
    # Validators
    # ========================================

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not (
            v.startswith("sqlite+aiosqlite://")
            or v.startswith("postgresql+asyncpg://")
        ):
            raise ValueError(
                "database_url must use an async driver: sqlite+aiosqlite:// or "
                "postgresql+asyncpg://"
            )
        return v

    @field_validator("reconnect_signatures")
    @classmethod
    def validate_reconnect_signatures(cls, v: list[str]) -> list[str]:
        signatures = [s for s in v if s.strip()]
        if not signatures:
            raise ValueError("reconnect_signatures must contain at least one signature")
        return signatures

    @model_validator(mode="after")
    def validate_jwt_config(self) -> "Settings":
        """Validate JWT configuration if enabled."""
        if self.jwt_enabled and not self.jwt_secret:
            raise ValueError("jwt_enabled requires jwt_secret")
        if self.environment == "prod" and not self.jwt_enabled:
            warnings.warn(
                "Running in production without JWT authentication is not recommended",
                UserWarning,
                stacklevel=2,
            )
        return self

    @model_validator(mode="after")
    def validate_bootstrap_device(self) -> "Settings":
        if self.device_host and self.device_password is None:
            raise ValueError("device_host is set but device_password is missing")
        return self

    @model_validator(mode="after")
    def validate_encryption_key(self) -> "Settings":
        """Validate encryption key is provided."""
        if self.encryption_key is None:
            if self.environment in ["staging", "prod"]:
                raise ValueError("encryption_key is required for staging/prod environments")
            warnings.warn(
                "encryption_key not set, using insecure default for lab only",
                UserWarning,
                stacklevel=2,
            )
            self.encryption_key = "INSECURE_LAB_KEY_DO_NOT_USE_IN_PRODUCTION"
        return self

    # ========================================
    # Helper Methods
    # ========================================

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def to_dict(self) -> dict:
        """Convert settings to dictionary, masking secrets."""
        data = self.model_dump()
        for key in ("encryption_key", "jwt_secret", "device_password"):
            if data.get(key):
                data[key] = "***REDACTED***"
        return data


def flatten_config(data: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested config sections into field names.

    ``{"server": {"port": 9000}}`` becomes ``{"server_port": 9000}``; a few
    section names map onto shorter field names (``device.defaults.timeout`` →
    ``device_default_timeout``, ``reconnect.signatures`` → ``reconnect_signatures``,
    ``crypto.encryption_key`` → ``encryption_key``).

    Example:
        >>> flatten_config({"subscription": {"max_restarts": 5}})
        {'subscription_max_restarts': 5}
    """
    flat: dict[str, Any] = {}
    for key, value in data.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_config(value, name))
        else:
            flat[_FIELD_ALIASES.get(name, name)] = value
    return flat


_FIELD_ALIASES = {
    "device_defaults_timeout": "device_default_timeout",
    "device_defaults_queue": "device_default_queue",
    "crypto_encryption_key": "encryption_key",
    "crypto_key": "encryption_key",
    "app_environment": "environment",
    "logging_level": "log_level",
    "logging_format": "log_format",
}


def load_settings_from_file(config_file: Path | str) -> Settings:
    """Load settings from YAML or TOML configuration file.

    Values present in the environment (``MIKROPS_*``) win over the file.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file format is invalid
    """
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix in [".yaml", ".yml"]:
        import yaml

        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}
    elif suffix == ".toml":
        import tomllib

        with open(config_path, "rb") as f:
            config_data = tomllib.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}. Use .yaml, .yml, or .toml")

    flat = flatten_config(config_data)
    overridden = {k for k in flat if f"{ENV_PREFIX}{k}".upper() in {e.upper() for e in os.environ}}
    for key in overridden:
        flat.pop(key)

    return Settings(**flat)
