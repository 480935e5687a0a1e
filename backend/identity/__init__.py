"""
Identity Core Module

Single source of truth for people in the lodge system, replacing the
overlapping legacy person collections.

Features:
- Canonical identity record (lowercase email as natural key)
- Role normalisation onto a closed set
- Lodge references that compare equal across stored representations
- Audit trail for every identity mutation
"""

from .errors import (
    IdentityError,
    NotFound,
    DuplicateEmail,
    InvalidCredentials,
    InactiveAccount,
    PermissionDenied,
    PreconditionFailed,
    ConfigurationError,
)
from .lodge_ref import LodgeRef
from .models import Base, IdentityDB, IdentityAuditLogDB, IdentityStatus, Position
from .roles import Role, normalize
from .store import IdentityStore

__all__ = [
    'IdentityError',
    'NotFound',
    'DuplicateEmail',
    'InvalidCredentials',
    'InactiveAccount',
    'PermissionDenied',
    'PreconditionFailed',
    'ConfigurationError',
    'LodgeRef',
    'Base',
    'IdentityDB',
    'IdentityAuditLogDB',
    'IdentityStatus',
    'Position',
    'Role',
    'normalize',
    'IdentityStore',
]
