"""
Shared configuration management for the cluster access gatekeeper.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATEKEEPER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    cors_origins: List[str] = Field(default_factory=list)

    # Identity issuer (OpenID Connect realm)
    issuer_base_url: str = Field(default="http://localhost:8080")
    issuer_realm: str = Field(default="cluster")
    client_id: str = Field(default="gatekeeper-backend")
    client_secret: str = Field(default="")
    http_timeout_seconds: float = Field(default=5.0, gt=0)

    # Shared store
    redis_url: str = Field(default="redis://localhost:6379/0")
    redis_timeout_seconds: float = Field(default=5.0, gt=0)

    # Install tokens
    install_token_max_ttl_hours: int = Field(default=720, ge=1)

    # Startup
    run_startup_checks: bool = Field(default=True)
    readiness_max_wait_seconds: float = Field(default=120.0, ge=0)
    readiness_retry_delay_seconds: float = Field(default=2.0, ge=0)
    bootstrap_admin_username: Optional[str] = Field(default=None)
    bootstrap_admin_password: Optional[str] = Field(default=None)
    bootstrap_max_attempts: int = Field(default=10, ge=1)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)

    @property
    def issuer(self) -> str:
        """Expected `iss` claim of tokens minted by the realm."""
        return f"{self.issuer_base_url.rstrip('/')}/realms/{self.issuer_realm}"

    @property
    def openid_connect_url(self) -> str:
        return f"{self.issuer}/protocol/openid-connect"

    @property
    def jwks_url(self) -> str:
        return f"{self.openid_connect_url}/certs"

    @property
    def userinfo_url(self) -> str:
        return f"{self.openid_connect_url}/userinfo"

    @property
    def token_url(self) -> str:
        return f"{self.openid_connect_url}/token"

    @property
    def logout_url(self) -> str:
        return f"{self.openid_connect_url}/logout"

    @property
    def well_known_url(self) -> str:
        return f"{self.issuer}/.well-known/openid-configuration"

    @property
    def admin_realm_url(self) -> str:
        return f"{self.issuer_base_url.rstrip('/')}/admin/realms/{self.issuer_realm}"


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
