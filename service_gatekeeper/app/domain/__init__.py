"""
Request gates for the Gatekeeper service.
"""

from .auth_middleware import AccessGate, AdminGate

__all__ = [
    "AccessGate",
    "AdminGate",
]
