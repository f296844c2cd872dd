"""
Mock OpenID Connect issuer serving JWKS, user-info, token, logout and the
admin endpoints the gatekeeper uses for bootstrap.

Tokens are real RS256 JWTs so the gatekeeper's local verification path is
exercised end to end. Every endpoint counts its calls in ``calls``.
"""

import uuid
from collections import Counter
from typing import Dict, Any, Optional, List

import jwt
from fastapi import FastAPI, HTTPException, Form, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from shared.logging import get_logger
from shared.test_helpers import MockTokenGenerator, SigningKey, TestUser, default_users


class MockIssuerServer:
    """Mock issuer implementation."""

    def __init__(self, base_url: str = "http://localhost:8080", realm: str = "cluster",
                 client_id: str = "gatekeeper-backend", client_secret: str = "gatekeeper-secret",
                 users: Optional[List[TestUser]] = None):
        self.logger = get_logger("mock.issuer")
        self.app = FastAPI(title="Mock Issuer", version="1.0.0")

        self.realm = realm
        self.client_id = client_id
        self.client_secret = client_secret
        self.issuer = f"{base_url.rstrip('/')}/realms/{realm}"
        self.tokens = MockTokenGenerator(issuer=self.issuer, client_id=client_id)

        self.users: Dict[str, TestUser] = {u.user_id: u for u in (users or default_users())}
        self.refresh_tokens: Dict[str, str] = {}
        self.admin_users: Dict[str, Dict[str, Any]] = {}
        self.role_mappings: Dict[str, List[str]] = {}
        self.calls: Counter = Counter()

        # Failure switches for tests
        self.certs_status: int = 200
        self.certs_body: Optional[Any] = None
        self.userinfo_status: Optional[int] = None
        self.publish_keys: bool = True

        self._setup_routes()

    def rotate_key(self, kid: Optional[str] = None) -> SigningKey:
        """Start signing with a fresh key; the old one disappears from JWKS."""
        self.tokens.key = SigningKey(kid=kid)
        return self.tokens.key

    def access_token_for(self, username: str, **overrides) -> str:
        return self.tokens.generate_access_token(self._user_by_name(username), **overrides)

    def refresh_token_for(self, username: str) -> str:
        token = f"refresh-{uuid.uuid4().hex}"
        self.refresh_tokens[token] = self._user_by_name(username).user_id
        return token

    def _user_by_name(self, username: str) -> TestUser:
        for user in self.users.values():
            if user.username == username:
                return user
        raise KeyError(username)

    def _check_realm(self, realm: str):
        if realm != self.realm:
            raise HTTPException(status_code=404, detail="Realm not found")

    def _check_client(self, client_id: str, client_secret: Optional[str]):
        if client_id != self.client_id or client_secret != self.client_secret:
            raise HTTPException(status_code=401, detail="invalid_client")

    def _token_pair(self, user: TestUser) -> Dict[str, Any]:
        refresh_token = f"refresh-{uuid.uuid4().hex}"
        self.refresh_tokens[refresh_token] = user.user_id
        return {
            "access_token": self.tokens.generate_access_token(user),
            "expires_in": 300,
            "refresh_expires_in": 1800,
            "refresh_token": refresh_token,
            "token_type": "Bearer",
            "not-before-policy": 0,
            "scope": "openid profile email",
        }

    def _setup_routes(self):
        """Set up mock issuer routes."""

        @self.app.get("/realms/{realm}/.well-known/openid-configuration")
        async def openid_configuration(realm: str):
            self.calls["well_known"] += 1
            self._check_realm(realm)
            return {
                "issuer": self.issuer,
                "token_endpoint": f"{self.issuer}/protocol/openid-connect/token",
                "userinfo_endpoint": f"{self.issuer}/protocol/openid-connect/userinfo",
                "jwks_uri": f"{self.issuer}/protocol/openid-connect/certs",
                "end_session_endpoint": f"{self.issuer}/protocol/openid-connect/logout",
                "grant_types_supported": ["authorization_code", "client_credentials", "refresh_token"],
                "id_token_signing_alg_values_supported": ["RS256"],
            }

        @self.app.get("/realms/{realm}/protocol/openid-connect/certs")
        async def jwks_endpoint(realm: str):
            self.calls["certs"] += 1
            self._check_realm(realm)
            if self.certs_status != 200:
                return JSONResponse(status_code=self.certs_status, content={"error": "unavailable"})
            if self.certs_body is not None:
                return self.certs_body
            return self.tokens.jwks() if self.publish_keys else {"keys": []}

        @self.app.get("/realms/{realm}/protocol/openid-connect/userinfo")
        async def userinfo_endpoint(realm: str, authorization: Optional[str] = Header(None)):
            self.calls["userinfo"] += 1
            self._check_realm(realm)
            if self.userinfo_status is not None:
                return JSONResponse(status_code=self.userinfo_status, content={"error": "invalid_token"})
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="invalid_token")

            try:
                claims = jwt.decode(
                    authorization[7:],
                    self.tokens.key.private_key.public_key(),
                    algorithms=["RS256"],
                    options={"verify_aud": False},
                )
            except jwt.InvalidTokenError:
                raise HTTPException(status_code=401, detail="invalid_token")

            user = self.users.get(claims.get("sub"))
            if user is None:
                raise HTTPException(status_code=401, detail="invalid_token")
            info = self.tokens.claims_for(user)
            return {k: v for k, v in info.items() if k not in ("iss", "aud", "azp", "iat", "exp", "typ", "scope")}

        @self.app.post("/realms/{realm}/protocol/openid-connect/token")
        async def token_endpoint(
            realm: str,
            grant_type: str = Form(...),
            client_id: str = Form(...),
            client_secret: Optional[str] = Form(None),
            refresh_token: Optional[str] = Form(None),
        ):
            self.calls[f"token.{grant_type}"] += 1
            self._check_realm(realm)
            self._check_client(client_id, client_secret)

            if grant_type == "client_credentials":
                service_account = TestUser(
                    user_id=f"service-account-{client_id}",
                    username=f"service-account-{client_id}",
                    email="",
                    roles=["service-account"],
                )
                return {
                    "access_token": self.tokens.generate_access_token(service_account),
                    "expires_in": 300,
                    "refresh_expires_in": 0,
                    "token_type": "Bearer",
                }
            if grant_type == "refresh_token":
                user_id = self.refresh_tokens.pop(refresh_token or "", None)
                if user_id is None:
                    return JSONResponse(
                        status_code=400,
                        content={"error": "invalid_grant", "error_description": "Invalid refresh token"},
                    )
                return self._token_pair(self.users[user_id])
            return JSONResponse(status_code=400, content={"error": "unsupported_grant_type"})

        @self.app.post("/realms/{realm}/protocol/openid-connect/logout")
        async def logout_endpoint(
            realm: str,
            client_id: str = Form(...),
            client_secret: Optional[str] = Form(None),
            refresh_token: Optional[str] = Form(None),
        ):
            self.calls["logout"] += 1
            self._check_realm(realm)
            self._check_client(client_id, client_secret)
            if self.refresh_tokens.pop(refresh_token or "", None) is None:
                return JSONResponse(status_code=400, content={"error": "invalid_grant"})
            return Response(status_code=204)

        @self.app.get("/admin/realms/{realm}/users")
        async def list_users(realm: str, username: Optional[str] = Query(None)):
            self.calls["admin.users.list"] += 1
            self._check_realm(realm)
            return [u for u in self.admin_users.values() if username is None or u["username"] == username]

        @self.app.post("/admin/realms/{realm}/users")
        async def create_user(realm: str, request: Request):
            self.calls["admin.users.create"] += 1
            self._check_realm(realm)
            body = await request.json()
            user_id = str(uuid.uuid4())
            self.admin_users[user_id] = {"id": user_id, **body}
            return Response(
                status_code=201,
                headers={"Location": f"{str(request.base_url).rstrip('/')}/admin/realms/{realm}/users/{user_id}"},
            )

        @self.app.put("/admin/realms/{realm}/users/{user_id}/reset-password")
        async def reset_password(realm: str, user_id: str):
            self.calls["admin.users.reset_password"] += 1
            self._check_realm(realm)
            if user_id not in self.admin_users:
                raise HTTPException(status_code=404, detail="User not found")
            return Response(status_code=204)

        @self.app.get("/admin/realms/{realm}/roles/{role}")
        async def get_role(realm: str, role: str):
            self.calls["admin.roles.get"] += 1
            self._check_realm(realm)
            return {"id": f"role-{role}", "name": role, "composite": False, "clientRole": False}

        @self.app.post("/admin/realms/{realm}/users/{user_id}/role-mappings/realm")
        async def map_roles(realm: str, user_id: str, request: Request):
            self.calls["admin.role_mappings"] += 1
            self._check_realm(realm)
            if user_id not in self.admin_users:
                raise HTTPException(status_code=404, detail="User not found")
            roles = await request.json()
            self.role_mappings.setdefault(user_id, []).extend(r["name"] for r in roles)
            return Response(status_code=204)


def create_app():
    """Create mock issuer application."""
    server = MockIssuerServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8080)
