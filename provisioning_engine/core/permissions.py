"""Caller identity and capability checks."""

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional
from uuid import UUID


ADMIN = "admin"
USER = "user"


def has_permission(permissions: Optional[Iterable[str]], required: str) -> bool:
    """
    Check a capability set for a required permission.

    `admin` grants everything; entries ending in `.*` match by prefix.
    Comparison is case-insensitive.
    """
    if not permissions:
        return False

    granted = [p.lower() for p in permissions]
    required = required.lower()

    if ADMIN in granted:
        return True

    for permission in granted:
        if permission == required:
            return True
        if permission.endswith(".*") and required.startswith(permission[:-2]):
            return True

    return False


@dataclass(frozen=True)
class Caller:
    """Authenticated identity handed to the engine by the auth layer."""

    user_id: UUID
    permissions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return has_permission(self.permissions, ADMIN)
