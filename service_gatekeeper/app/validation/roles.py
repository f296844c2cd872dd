"""
Role decisions over a verified identity. No IO.
"""

from typing import FrozenSet, List

from .token_validator import VerifiedIdentity

ADMIN_ROLE = "admin"
USER_ROLE = "user"
GUEST_ROLE = "guest"


class RoleResolver:
    """Realm roles plus the roles granted by every resource (client)."""

    def roles(self, identity: VerifiedIdentity) -> FrozenSet[str]:
        collected = set(identity.realm_access.roles)
        for access in identity.resource_access.values():
            collected.update(access.roles)
        return frozenset(collected)

    def sorted_roles(self, identity: VerifiedIdentity) -> List[str]:
        return sorted(self.roles(identity))

    def has_role(self, identity: VerifiedIdentity, role: str) -> bool:
        return role in self.roles(identity)

    def is_admin(self, identity: VerifiedIdentity) -> bool:
        return self.has_role(identity, ADMIN_ROLE)

    def is_user(self, identity: VerifiedIdentity) -> bool:
        return self.has_role(identity, USER_ROLE)

    def is_guest(self, identity: VerifiedIdentity) -> bool:
        return self.has_role(identity, GUEST_ROLE)
