"""
Token validation service for the Gatekeeper.

Local verification against the issuer's published keys is always tried
first; any failure there (unknown key, unreachable key set, bad signature
or claims) falls back to asking the issuer's user-info endpoint.
"""

from typing import Dict, Any, List, Optional

from jose import jwt
from jose.exceptions import JOSEError
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from shared.errors import (
    AuthenticationError,
    ExternalServiceError,
    KeySetUnavailableError,
    MalformedCredentialError,
    SignatureOrClaimInvalidError,
)
from shared.logging import bind_gatekeeper_context, get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_function

from ..idp.client import IssuerClient, TokenEndpointResponse
from ..jwks.client import KeySetCache

ALLOWED_ALGORITHMS = frozenset({
    "RS256", "RS384", "RS512",
    "PS256", "PS384", "PS512",
    "ES256", "ES384", "ES512",
})

INVALID_TOKEN = "Invalid token"


class RoleList(BaseModel):
    roles: List[str] = Field(default_factory=list)


class VerifiedIdentity(BaseModel):
    """Claims of a verified caller, in the issuer's claim shape."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    sub: str
    preferred_username: str
    email: str = ""
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    realm_access: RoleList = Field(default_factory=RoleList)
    resource_access: Dict[str, RoleList] = Field(default_factory=dict)

    @field_validator("email", mode="before")
    @classmethod
    def _missing_email(cls, value):
        return value if value is not None else ""

    @field_validator("realm_access", mode="before")
    @classmethod
    def _missing_realm_access(cls, value):
        return value if value is not None else {}


class TokenValidationRequest(BaseModel):
    """Request model for token validation."""
    token: str


class TokenValidationResponse(BaseModel):
    """Response model for token validation."""
    valid: bool
    user: Optional[VerifiedIdentity] = None
    error: Optional[str] = None
    source: Optional[str] = None


class TokenValidator:
    """Token validation service."""

    def __init__(self, config, issuer: IssuerClient, key_cache: KeySetCache,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config
        self.issuer = issuer
        self.key_cache = key_cache
        self.metrics = metrics
        self.logger = get_logger("gatekeeper.validator")

    @trace_function("token.validate")
    async def validate(self, token: str) -> TokenValidationResponse:
        """Validate a bearer token; never raises for an invalid token."""
        try:
            header = self._read_header(token)
        except MalformedCredentialError as exc:
            self.logger.info("Rejected malformed token", reason=exc.message)
            self._record("invalid", "header")
            return TokenValidationResponse(valid=False, error=INVALID_TOKEN)
        bind_gatekeeper_context(kid=header["kid"])

        try:
            identity = await self._verify_locally(token, header)
        except (KeySetUnavailableError, SignatureOrClaimInvalidError) as exc:
            self.logger.info("Local verification failed, asking issuer", kid=header["kid"], reason=exc.message)
        else:
            return self._accept(identity, "jwks")

        try:
            identity = await self._verify_remotely(token)
        except (ExternalServiceError, SignatureOrClaimInvalidError) as exc:
            self.logger.warning("Token rejected", reason=exc.message, code=exc.code)
            self._record("invalid", "userinfo")
            return TokenValidationResponse(valid=False, error=INVALID_TOKEN)
        return self._accept(identity, "userinfo")

    async def authenticate(self, token: str) -> VerifiedIdentity:
        """Raising variant of ``validate``."""
        result = await self.validate(token)
        if not result.valid or result.user is None:
            raise AuthenticationError("Invalid or expired token")
        return result.user

    async def refresh_token(self, refresh_token: str) -> TokenEndpointResponse:
        return await self.issuer.refresh(refresh_token)

    async def logout(self, refresh_token: str) -> None:
        await self.issuer.logout(refresh_token)

    def _read_header(self, token: str) -> Dict[str, Any]:
        if not token or token.count(".") != 2:
            raise MalformedCredentialError("Token is not a compact JWS")
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as exc:
            raise MalformedCredentialError("Token header could not be decoded") from exc

        kid = header.get("kid")
        alg = header.get("alg")
        if not isinstance(kid, str) or not kid:
            raise MalformedCredentialError("Token header missing key id (kid)")
        if not isinstance(alg, str) or alg not in ALLOWED_ALGORITHMS:
            raise MalformedCredentialError("Token algorithm not allowed", details={"alg": alg})
        return header

    async def _verify_locally(self, token: str, header: Dict[str, Any]) -> VerifiedIdentity:
        kid, alg = header["kid"], header["alg"]

        entry = await self.key_cache.get(kid)
        if entry is None:
            raise SignatureOrClaimInvalidError("Signing key not found", details={"kid": kid})
        if entry.alg is not None and entry.alg != alg:
            raise SignatureOrClaimInvalidError("Token algorithm does not match key", details={"kid": kid})

        try:
            claims = jwt.decode(
                token,
                entry.jwk,
                algorithms=[alg],
                issuer=self.config.issuer,
                options={"verify_aud": False, "require_exp": True},
            )
        except JOSEError as exc:
            raise SignatureOrClaimInvalidError(str(exc) or "Token verification failed") from exc
        except (TypeError, ValueError) as exc:
            # jose builds the key lazily and does not wrap bad key material
            raise SignatureOrClaimInvalidError("Signing key material unusable", details={"kid": kid}) from exc

        return self._to_identity(claims)

    async def _verify_remotely(self, token: str) -> VerifiedIdentity:
        return self._to_identity(await self.issuer.userinfo(token))

    @staticmethod
    def _to_identity(claims: Dict[str, Any]) -> VerifiedIdentity:
        try:
            return VerifiedIdentity.model_validate(claims)
        except PydanticValidationError as exc:
            raise SignatureOrClaimInvalidError("Token claims incomplete") from exc

    def _accept(self, identity: VerifiedIdentity, source: str) -> TokenValidationResponse:
        add_span_attributes(**{"enduser.id": identity.sub, "token.source": source})
        self.logger.debug("Token verified", sub=identity.sub, source=source)
        self._record("valid", source)
        return TokenValidationResponse(valid=True, user=identity, source=source)

    def _record(self, status: str, source: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("token_validations_total", status=status, source=source)
