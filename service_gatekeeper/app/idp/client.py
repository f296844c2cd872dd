"""
HTTP client for the OpenID Connect issuer (Keycloak-style realm).

Every call goes through one ``httpx.AsyncClient`` with a bounded timeout
and a circuit breaker that only counts transport failures; an issuer
that answers, even with 401, is considered healthy.
"""

from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.config import BaseConfig
from shared.errors import (
    ExternalServiceError,
    KeySetUnavailableError,
    UpstreamRejectedError,
    UpstreamTimeoutError,
)
from shared.logging import get_logger
from shared.tracing import trace_function

ISSUER = "issuer"


class TokenEndpointResponse(BaseModel):
    """Subset of the token endpoint answer the gatekeeper passes on."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 0
    refresh_expires_in: Optional[int] = None
    token_type: str = "Bearer"


class IssuerClient:
    """Issuer capability injected into the key cache, validator and startup checks."""

    def __init__(self, config: BaseConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.logger = get_logger("gatekeeper.idp")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=config.http_timeout_seconds)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=httpx.TransportError,
            name=ISSUER,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.circuit_breaker.call(self._client.request, method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError(ISSUER) from exc
        except httpx.TransportError as exc:
            raise ExternalServiceError(ISSUER, f"transport error: {exc.__class__.__name__}") from exc
        except CircuitBreakerOpenException as exc:
            raise ExternalServiceError(ISSUER, "circuit breaker open") from exc

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalServiceError(ISSUER, "response body is not JSON") from exc

    def _client_credentials(self) -> Dict[str, str]:
        return {"client_id": self.config.client_id, "client_secret": self.config.client_secret}

    @trace_function("issuer.fetch_key_set")
    async def fetch_key_set(self) -> List[Dict[str, Any]]:
        """Fetch the raw JWK list from the realm's certs endpoint."""
        try:
            response = await self._request("GET", self.config.jwks_url)
        except ExternalServiceError as exc:
            raise KeySetUnavailableError(details={"reason": exc.message}) from exc

        if not response.is_success:
            raise KeySetUnavailableError(details={"status_code": response.status_code})

        try:
            payload = response.json()
        except ValueError as exc:
            raise KeySetUnavailableError(details={"reason": "body is not JSON"}) from exc

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise KeySetUnavailableError(details={"reason": "response missing 'keys' array"})
        return keys

    @trace_function("issuer.userinfo")
    async def userinfo(self, token: str) -> Dict[str, Any]:
        """Ask the issuer who ``token`` belongs to."""
        response = await self._request(
            "GET", self.config.userinfo_url, headers={"Authorization": f"Bearer {token}"}
        )
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)

        payload = self._json(response)
        if not isinstance(payload, dict):
            raise ExternalServiceError(ISSUER, "user-info body is not an object")
        return payload

    async def refresh(self, refresh_token: str) -> TokenEndpointResponse:
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token, **self._client_credentials()}
        response = await self._request("POST", self.config.token_url, data=data)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
        return TokenEndpointResponse.model_validate(self._json(response))

    async def logout(self, refresh_token: str) -> None:
        data = {"refresh_token": refresh_token, **self._client_credentials()}
        response = await self._request("POST", self.config.logout_url, data=data)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)

    async def service_token(self) -> str:
        """Client-credentials token for the gatekeeper's own service account."""
        data = {"grant_type": "client_credentials", **self._client_credentials()}
        response = await self._request("POST", self.config.token_url, data=data)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
        return TokenEndpointResponse.model_validate(self._json(response)).access_token

    async def health_check(self) -> str:
        """Return 'ok' if the realm's discovery document is served, otherwise 'error'."""
        try:
            response = await self._request("GET", self.config.well_known_url)
        except ExternalServiceError as exc:
            self.logger.warning("Issuer health check failed", error=exc.message)
            return "error"
        return "ok" if response.is_success else "error"

    async def probe_ready(self) -> None:
        """One readiness probe: discovery document, key set and a service token.

        Raises on the first step that fails.
        """
        response = await self._request("GET", self.config.well_known_url)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
        await self.fetch_key_set()
        await self.service_token()

    async def ensure_admin_user(self, username: str, password: str, role: str = "admin") -> str:
        """Make sure ``username`` exists in the realm and holds ``role``.

        Returns the user id. Uses the service account token, which needs the
        realm-management permissions to query and create users.
        """
        token = await self.service_token()
        headers = {"Authorization": f"Bearer {token}"}
        users_url = f"{self.config.admin_realm_url}/users"

        response = await self._request("GET", users_url, params={"username": username, "exact": "true"}, headers=headers)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)

        existing = [u for u in self._json(response) if u.get("username") == username]
        if existing:
            user_id = existing[0]["id"]
            self.logger.info("Bootstrap admin user already exists", username=username)
        else:
            user_id = await self._create_user(username, password, headers)
            self.logger.info("Bootstrap admin user created", username=username, user_id=user_id)

        await self._assign_realm_role(user_id, role, headers)
        return user_id

    async def _create_user(self, username: str, password: str, headers: Dict[str, str]) -> str:
        users_url = f"{self.config.admin_realm_url}/users"
        representation = {
            "username": username,
            "email": f"{username}@local",
            "firstName": "Admin",
            "lastName": "User",
            "enabled": True,
        }
        response = await self._request("POST", users_url, json=representation, headers=headers)
        if response.status_code != 201:
            raise UpstreamRejectedError(ISSUER, response.status_code)

        location = response.headers.get("Location", "")
        user_id = location.rstrip("/").rsplit("/", 1)[-1]
        if not user_id:
            raise ExternalServiceError(ISSUER, "create user response has no Location header")

        credential = {"type": "password", "value": password, "temporary": False}
        response = await self._request(
            "PUT", f"{users_url}/{user_id}/reset-password", json=credential, headers=headers
        )
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
        return user_id

    async def _assign_realm_role(self, user_id: str, role: str, headers: Dict[str, str]) -> None:
        response = await self._request("GET", f"{self.config.admin_realm_url}/roles/{role}", headers=headers)
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
        role_representation = self._json(response)

        response = await self._request(
            "POST",
            f"{self.config.admin_realm_url}/users/{user_id}/role-mappings/realm",
            json=[role_representation],
            headers=headers,
        )
        if not response.is_success:
            raise UpstreamRejectedError(ISSUER, response.status_code)
