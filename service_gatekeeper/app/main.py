"""
Gatekeeper service: bearer-token checks, role decisions and the
install-token protocol for agents and controllers.
"""

from typing import Dict, List, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import ExternalServiceError, UpstreamRejectedError, ValidationError

from .bootstrap import StartupCoordinator, StartupReport
from .domain.auth_middleware import AccessGate, AdminGate
from .idp.client import IssuerClient
from .install.models import (
    ConnectedServiceRecord,
    CreateInstallTokenRequest,
    CreateInstallTokenResponse,
    HeartbeatRequest,
    ServiceRegistrationRequest,
    ServiceRegistrationResponse,
    ServiceType,
)
from .install.registry import ServiceRegistry
from .install.token_store import InstallTokenStore, create_redis
from .jwks.client import KeySetCache
from .validation.roles import RoleResolver
from .validation.token_validator import TokenValidationRequest, TokenValidator, VerifiedIdentity

SERVICE_NAME = "gatekeeper"
SERVICE_PORT = 3001


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class GatekeeperService(BaseService):
    """Gatekeeper service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 redis_client: Optional[redis.Redis] = None):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config)

        self.issuer = IssuerClient(self.config, http_client)
        self._owns_redis = redis_client is None
        self.redis = redis_client or create_redis(self.config.redis_url, self.config.redis_timeout_seconds)

        self.key_cache = KeySetCache(self.issuer, self.metrics)
        self.token_validator = TokenValidator(self.config, self.issuer, self.key_cache, self.metrics)
        self.roles = RoleResolver()
        self.token_store = InstallTokenStore(self.redis, self.metrics, self.config.install_token_max_ttl_hours)
        self.registry = ServiceRegistry(self.redis, self.token_store, self.metrics)
        self.startup = StartupCoordinator(self.config, self.issuer, self.redis, self.key_cache)

        self.require_user = AccessGate(self.token_validator)
        self.require_admin = AdminGate(self.require_user, self.roles)

        self._setup_gatekeeper_routes()

    async def on_startup(self):
        if not self.config.run_startup_checks:
            self.startup.report = StartupReport(status="skipped")
            return
        await self.startup.run()

    async def on_shutdown(self):
        await self.issuer.close()
        if self._owns_redis:
            await self.redis.aclose()

    def _setup_gatekeeper_routes(self):
        """Set up gatekeeper routes."""
        require_user = self.require_user
        require_admin = self.require_admin

        @self.app.get("/")
        async def root():
            return {
                "service": SERVICE_NAME,
                "message": "Cluster access gatekeeper",
                "version": "1.0.0",
            }

        @self.app.post("/auth/validate")
        async def validate_token(request: TokenValidationRequest):
            """Validate a token; always answers 200 with ``valid`` set."""
            result = await self.token_validator.validate(request.token)
            return result.model_dump(exclude_none=True, exclude={"source"})

        @self.app.get("/auth/user")
        async def current_user(identity: VerifiedIdentity = Depends(require_user)):
            return {
                "user": identity.model_dump(exclude_none=True),
                "roles": self.roles.sorted_roles(identity),
            }

        @self.app.post("/auth/refresh")
        async def refresh_token(request: RefreshTokenRequest):
            try:
                tokens = await self.token_validator.refresh_token(request.refresh_token)
            except UpstreamRejectedError as exc:
                self.logger.info("Token refresh rejected", upstream_status=exc.upstream_status)
                return JSONResponse(
                    status_code=401,
                    content={"error": "invalid_token", "error_description": "Invalid or expired refresh token"},
                )
            return {
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "expires_in": tokens.expires_in,
                "token_type": tokens.token_type,
            }

        @self.app.post("/auth/logout")
        async def logout(request: RefreshTokenRequest):
            try:
                await self.token_validator.logout(request.refresh_token)
            except ExternalServiceError as exc:
                self.logger.error("Logout failed", code=exc.code, error=exc.message)
                return JSONResponse(
                    status_code=500,
                    content={"error": "INTERNAL_ERROR", "message": "Logout failed"},
                )
            return {"message": "Logged out successfully"}

        @self.app.get("/api/v1/user/profile")
        async def user_profile(identity: VerifiedIdentity = Depends(require_user)):
            return {
                "id": identity.sub,
                "username": identity.preferred_username,
                "email": identity.email,
                "first_name": identity.given_name,
                "last_name": identity.family_name,
                "realm_access": identity.realm_access.model_dump(),
                "resource_access": {k: v.model_dump() for k, v in identity.resource_access.items()},
            }

        @self.app.get("/api/v1/user/roles")
        async def user_roles(identity: VerifiedIdentity = Depends(require_user)):
            return {
                "username": identity.preferred_username,
                "roles": self.roles.sorted_roles(identity),
                "is_admin": self.roles.is_admin(identity),
                "is_user": self.roles.is_user(identity),
                "is_guest": self.roles.is_guest(identity),
            }

        @self.app.post("/install-tokens", response_model=CreateInstallTokenResponse)
        async def create_install_token(request: CreateInstallTokenRequest,
                                       identity: VerifiedIdentity = Depends(require_admin)):
            return await self.token_store.create_install_token(request, identity.preferred_username)

        @self.app.post("/services/register", response_model=ServiceRegistrationResponse)
        async def register_service(request: ServiceRegistrationRequest):
            result = await self.registry.register(request.install_token, request.client_cert_pem, request.metadata)
            return ServiceRegistrationResponse(service_id=result.service_id, message=result.message)

        @self.app.post("/services/heartbeat", response_model=ConnectedServiceRecord)
        async def heartbeat(request: HeartbeatRequest,
                            identity: VerifiedIdentity = Depends(require_user)):
            return await self.registry.heartbeat_certificate(request.client_cert_pem)

        @self.app.get("/services", response_model=List[ConnectedServiceRecord])
        async def list_services(service_type: Optional[str] = None,
                                identity: VerifiedIdentity = Depends(require_user)):
            kind = None
            if service_type is not None:
                try:
                    kind = ServiceType(service_type)
                except ValueError:
                    raise ValidationError(
                        "Invalid service_type",
                        details={"allowed": [t.value for t in ServiceType]},
                    )
            return await self.registry.list(kind)

        @self.app.get("/diagnostics")
        async def diagnostics(identity: VerifiedIdentity = Depends(require_admin)):
            return {
                "startup": self.startup.report.model_dump(mode="json"),
                "circuit_breakers": {"issuer": self.issuer.circuit_breaker.get_state()},
                "key_cache": self.key_cache.snapshot(),
            }

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {"issuer": await self.issuer.health_check()}
        try:
            await self.redis.ping()
            dependencies["redis"] = "ok"
        except RedisError as exc:
            self.logger.warning("Redis health check failed", error=str(exc))
            dependencies["redis"] = "error"
        return dependencies

    def _health_status(self, dependencies: Dict[str, str]) -> str:
        if self.startup.report.status == "degraded":
            return "degraded"
        return super()._health_status(dependencies)

    def _health_details(self):
        return {"startup": self.startup.report.status}


def create_app(config: Optional[ServiceConfig] = None,
               http_client: Optional[httpx.AsyncClient] = None,
               redis_client: Optional[redis.Redis] = None):
    """Create FastAPI application."""
    service = GatekeeperService(config, http_client, redis_client)
    return service.app


if __name__ == "__main__":
    service = GatekeeperService()
    service.run()
