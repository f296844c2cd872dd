"""Client for the upstream OpenID Connect issuer."""
