"""Tests for bearer-token validation and tenant extraction."""

import time

import pytest
from authlib.jose import JsonWebToken

from mikrops.config import Settings
from mikrops.domain.exceptions import AuthError
from mikrops.security.auth import TokenValidator, extract_bearer_token

SECRET = "test-signing-secret"


def make_token(claims: dict, secret: str = SECRET, algorithm: str = "HS256") -> str:
    token = JsonWebToken([algorithm]).encode({"alg": algorithm}, claims, secret)
    return token.decode("utf-8")


@pytest.fixture
def validator() -> TokenValidator:
    return TokenValidator(SECRET)


class TestTokenValidator:
    def test_valid_token_yields_tenant(self, validator: TokenValidator) -> None:
        token = make_token({"sub": "ops@isp", "tenant_id": "isp-a", "exp": int(time.time()) + 60})

        tenant = validator.validate(token)

        assert tenant.tenant_id == "isp-a"
        assert tenant.subject == "ops@isp"
        assert tenant.claims["sub"] == "ops@isp"

    def test_custom_tenant_claim(self) -> None:
        validator = TokenValidator(SECRET, tenant_claim="org")

        assert validator.validate(make_token({"org": "isp-b"})).tenant_id == "isp-b"

    def test_missing_token_rejected(self, validator: TokenValidator) -> None:
        with pytest.raises(AuthError, match="Missing bearer token"):
            validator.validate(None)

    def test_wrong_signature_rejected(self, validator: TokenValidator) -> None:
        with pytest.raises(AuthError, match="Invalid token"):
            validator.validate(make_token({"tenant_id": "isp-a"}, secret="other-secret"))

    def test_expired_token_rejected(self, validator: TokenValidator) -> None:
        token = make_token({"tenant_id": "isp-a", "exp": int(time.time()) - 3600})

        with pytest.raises(AuthError, match="Invalid token"):
            validator.validate(token)

    def test_garbage_token_rejected(self, validator: TokenValidator) -> None:
        with pytest.raises(AuthError):
            validator.validate("not.a.jwt")

    def test_token_without_tenant_rejected(self, validator: TokenValidator) -> None:
        with pytest.raises(AuthError, match="tenant_id"):
            validator.validate(make_token({"sub": "nobody"}))

    def test_disabled_auth_uses_default_tenant(self) -> None:
        validator = TokenValidator(None, enabled=False, default_tenant_id="lab")

        tenant = validator.validate(None)

        assert tenant.tenant_id == "lab"

    def test_enabled_without_secret_is_refused(self) -> None:
        with pytest.raises(AuthError):
            TokenValidator(None)

    def test_from_settings(self) -> None:
        settings = Settings(
            jwt_enabled=True,
            jwt_secret=SECRET,
            jwt_tenant_claim="org",
        )
        validator = TokenValidator.from_settings(settings)

        assert validator.enabled
        assert validator.validate(make_token({"org": "isp-c"})).tenant_id == "isp-c"


class TestExtractBearerToken:
    def test_extracts_token(self) -> None:
        assert extract_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self) -> None:
        assert extract_bearer_token("bearer tok") == "tok"

    def test_absent_header(self) -> None:
        assert extract_bearer_token(None) is None

    @pytest.mark.parametrize("header", ["Basic dXNlcjpwYXNz", "Bearer", "Bearer a b"])
    def test_malformed_header(self, header: str) -> None:
        with pytest.raises(AuthError):
            extract_bearer_token(header)
