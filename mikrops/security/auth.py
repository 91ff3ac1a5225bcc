"""Bearer-token authentication with tenant scoping.

Tokens are HMAC-signed JWTs validated with Authlib. The tenant comes from a
configurable claim (``tenant_id`` by default); every database query and broker
channel downstream is scoped to it.

When authentication is disabled (lab), every request runs as the configured
default tenant.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from authlib.jose import JsonWebToken
from authlib.jose.errors import JoseError

from mikrops.config import Settings
from mikrops.domain.exceptions import AuthError
from mikrops.infra.observability import metrics

logger = logging.getLogger(__name__)

# Allowed clock skew when checking exp/nbf
CLOCK_SKEW_SECONDS = 30


@dataclass
class TenantContext:
    """Caller identity resolved from a token.

    Attributes:
        tenant_id: Tenant all data access is scoped to
        subject: Token ``sub`` claim, if any
        claims: Full validated claim set
    """

    tenant_id: str
    subject: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


class TokenValidator:
    """Validates bearer tokens and extracts the tenant.

    Example:
        validator = TokenValidator.from_settings(settings)
        tenant = validator.validate(extract_bearer_token(request.headers.get("Authorization")))
    """

    def __init__(
        self,
        secret: str | None,
        *,
        algorithm: str = "HS256",
        tenant_claim: str = "tenant_id",
        enabled: bool = True,
        default_tenant_id: str = "default",
    ) -> None:
        if enabled and not secret:
            raise AuthError("JWT authentication enabled without a secret")
        self.enabled = enabled
        self.algorithm = algorithm
        self.tenant_claim = tenant_claim
        self.default_tenant_id = default_tenant_id
        self._secret = (secret or "").encode("utf-8")
        self._jwt = JsonWebToken([algorithm])

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenValidator":
        return cls(
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            tenant_claim=settings.jwt_tenant_claim,
            enabled=settings.jwt_enabled,
            default_tenant_id=settings.default_tenant_id,
        )

    def validate(self, token: str | None) -> TenantContext:
        """Validate a token and return the caller's tenant.

        Raises:
            AuthError: Missing, malformed, expired or tenant-less token
        """
        if not self.enabled:
            return TenantContext(tenant_id=self.default_tenant_id, subject="anonymous")

        if not token:
            metrics.record_auth_check(success=False)
            raise AuthError("Missing bearer token")

        try:
            claims = self._jwt.decode(token, self._secret)
            claims.validate(leeway=CLOCK_SKEW_SECONDS)
        except JoseError as e:
            metrics.record_auth_check(success=False)
            logger.warning("JWT validation failed", extra={"error": str(e)})
            raise AuthError(f"Invalid token: {e}") from e

        tenant_id = claims.get(self.tenant_claim)
        if not tenant_id:
            metrics.record_auth_check(success=False)
            raise AuthError(f"Token missing '{self.tenant_claim}' claim")

        metrics.record_auth_check(success=True)
        return TenantContext(
            tenant_id=str(tenant_id),
            subject=claims.get("sub"),
            claims=dict(claims),
        )


def extract_bearer_token(authorization_header: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer`` header.

    Returns None when the header is absent.

    Raises:
        AuthError: Header present but malformed
    """
    if not authorization_header:
        return None

    parts = authorization_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format. Expected: Bearer <token>")

    return parts[1]
