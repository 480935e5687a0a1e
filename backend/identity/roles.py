"""
Identity Core - Role Normalizer

Historical records spell roles in mixed case and with several aliases
(``district_admin``, ``Lodge Admin``, ``superadmin``...). This module is the
single point where a stored or submitted role string becomes a ``Role``.

Unknown values resolve to ``LODGE_MEMBER``, never to an elevated role.
"""

import logging
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Closed set of identity roles"""
    SUPER_ADMIN = "SUPER_ADMIN"
    DISTRICT_ADMIN = "DISTRICT_ADMIN"
    LODGE_ADMIN = "LODGE_ADMIN"
    LODGE_MEMBER = "LODGE_MEMBER"


# Keys are already uppercased with separators collapsed to "_"
ROLE_ALIASES = {
    "SUPER_ADMIN": Role.SUPER_ADMIN,
    "SUPERADMIN": Role.SUPER_ADMIN,
    "DISTRICT_ADMIN": Role.DISTRICT_ADMIN,
    "DISTRICTADMIN": Role.DISTRICT_ADMIN,
    "LODGE_ADMIN": Role.LODGE_ADMIN,
    "LODGEADMIN": Role.LODGE_ADMIN,
    "LODGE_MEMBER": Role.LODGE_MEMBER,
    "LODGEMEMBER": Role.LODGE_MEMBER,
    "MEMBER": Role.LODGE_MEMBER,
}

ADMIN_ROLES = frozenset({Role.SUPER_ADMIN, Role.DISTRICT_ADMIN, Role.LODGE_ADMIN})

ROLE_RANK = {
    Role.LODGE_MEMBER: 1,
    Role.LODGE_ADMIN: 2,
    Role.DISTRICT_ADMIN: 3,
    Role.SUPER_ADMIN: 4,
}


def normalize(raw_role: Any) -> Role:
    """
    Map a raw role value onto the closed ``Role`` set.

    Trims, uppercases and collapses spaces/hyphens to underscores before
    looking the value up in ``ROLE_ALIASES``. Anything unrecognised,
    including non-string values, becomes ``Role.LODGE_MEMBER``.
    """
    if isinstance(raw_role, Role):
        return raw_role
    if not isinstance(raw_role, str):
        return Role.LODGE_MEMBER

    key = raw_role.strip().upper().replace("-", "_").replace(" ", "_")
    role = ROLE_ALIASES.get(key)
    if role is None:
        if key:
            logger.warning(f"Unrecognised role {raw_role!r}, defaulting to {Role.LODGE_MEMBER.value}")
        return Role.LODGE_MEMBER
    return role


def is_admin_role(role: Any) -> bool:
    return normalize(role) in ADMIN_ROLES


def role_rank(role: Any) -> int:
    """Hierarchy position, higher is more privileged."""
    return ROLE_RANK[normalize(role)]
