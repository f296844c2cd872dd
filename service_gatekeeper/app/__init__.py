"""
Gatekeeper service package.

FastAPI application that sits in front of the cluster control plane and
decides who gets in:

- app.main: application entrypoint that wires routes and lifecycle.
- app.jwks: signing-key cache for the upstream issuer.
- app.idp: HTTP client for the OpenID Connect issuer.
- app.validation: bearer token validation and role decisions.
- app.install: install tokens and registration of agents/controllers.
- app.domain: request gates used as FastAPI dependencies.

Module import must not perform network calls. All IO happens in route
handlers or the startup coordinator.
"""
