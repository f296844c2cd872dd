"""
Token validation package.

- token_validator: local signature/claim checks with a user-info fallback.
- roles: pure role decisions over a verified identity.
"""
