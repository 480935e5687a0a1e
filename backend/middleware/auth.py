"""
Authentication Middleware and Dependencies

Provides:
- get_current_user: Extract and validate user from the bearer token
- get_current_user_required: Same, raising 401 when absent or invalid
- RoleChecker: Dependency for role validation

The role in the token is never trusted on its own: every request reloads
the identity so role changes and deactivation take effect immediately.
"""

from typing import Optional, List
import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from identity.dependencies import get_identity_store, get_session_issuer
from identity.models import IdentityStatus
from identity.roles import Role
from identity.store import IdentityStore
from sentry_integration import set_user
from services.auth import AuthUser, SessionIssuer

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


async def _resolve_user(
    credentials: Optional[HTTPAuthorizationCredentials],
    issuer: SessionIssuer,
    store: IdentityStore,
) -> Optional[AuthUser]:
    if not credentials:
        return None

    claims = issuer.verify(credentials.credentials)
    if not claims:
        return None

    # Get role from storage (in case it changed)
    identity = await store.find_by_id(claims.user_id)
    if identity is None or identity.status != IdentityStatus.ACTIVE.value:
        logger.warning(f"Token for missing or inactive identity {claims.user_id}")
        return None

    user = AuthUser(
        id=str(identity.id),
        email=identity.email,
        role=identity.normalized_role,
        name=identity.display_name,
        lodge_id=identity.primary_lodge_id,
    )
    set_user(user.id, role=user.role.value)
    return user


# ==================== DEPENDENCIES ====================

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    issuer: SessionIssuer = Depends(get_session_issuer),
    store: IdentityStore = Depends(get_identity_store),
) -> Optional[AuthUser]:
    """
    Extract current user from the bearer token.
    Returns None if no token or invalid token.
    """
    return await _resolve_user(credentials, issuer, store)


async def get_current_user_required(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    issuer: SessionIssuer = Depends(get_session_issuer),
    store: IdentityStore = Depends(get_identity_store),
) -> AuthUser:
    """
    Extract current user from the bearer token.
    Raises 401 if no token or invalid token.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"}
        )

    user = await _resolve_user(credentials, issuer, store)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"}
        )
    return user


class RoleChecker:
    """
    Dependency class for role-based access control.

    Usage:
        @router.get("/admin-only")
        async def admin_endpoint(user: AuthUser = Depends(RoleChecker([Role.SUPER_ADMIN]))):
            ...
    """

    def __init__(self, allowed_roles: List[Role]):
        self.allowed_roles = allowed_roles

    async def __call__(self, user: AuthUser = Depends(get_current_user_required)) -> AuthUser:
        if user.role not in self.allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {[r.value for r in self.allowed_roles]}"
            )
        return user


# Convenience role checkers
require_super_admin = RoleChecker([Role.SUPER_ADMIN])
require_district_admin = RoleChecker([Role.SUPER_ADMIN, Role.DISTRICT_ADMIN])
require_admin = RoleChecker([Role.SUPER_ADMIN, Role.DISTRICT_ADMIN, Role.LODGE_ADMIN])
