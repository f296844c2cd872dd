"""
Authentication and authorization gates for Gatekeeper routes.

Both gates are callables usable directly as FastAPI dependencies.
"""

from typing import Optional

from fastapi import Request

from shared.errors import AuthorizationError, MalformedCredentialError
from shared.logging import get_logger, set_user_context

from ..validation.roles import RoleResolver
from ..validation.token_validator import TokenValidator, VerifiedIdentity

BEARER_PREFIX = "Bearer "


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Return the token from an ``Authorization: Bearer <token>`` header value."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise MalformedCredentialError()

    token = authorization[len(BEARER_PREFIX):]
    if not token or any(ch.isspace() for ch in token):
        raise MalformedCredentialError()
    return token


class AccessGate:
    """Lets a request through once its bearer token is verified."""

    def __init__(self, validator: TokenValidator):
        self.validator = validator
        self.logger = get_logger("gatekeeper.access_gate")

    async def __call__(self, request: Request) -> VerifiedIdentity:
        token = extract_bearer_token(request.headers.get("Authorization"))
        identity = await self.validator.authenticate(token)

        request.state.identity = identity
        set_user_context(identity.sub, identity.preferred_username)
        return identity


class AdminGate:
    """AccessGate plus the admin role."""

    def __init__(self, access_gate: AccessGate, roles: RoleResolver):
        self.access_gate = access_gate
        self.roles = roles
        self.logger = get_logger("gatekeeper.admin_gate")

    async def __call__(self, request: Request) -> VerifiedIdentity:
        identity = await self.access_gate(request)
        if not self.roles.is_admin(identity):
            self.logger.warning("Admin access denied", user_id=identity.sub,
                                path=request.url.path)
            raise AuthorizationError("Admin role required")
        return identity
