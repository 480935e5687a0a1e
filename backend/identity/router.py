"""
Identity Core - API Router

Provides REST API endpoints for identity management:
- GET /api/identity - List identities
- GET /api/identity/by-email - Get identity by email
- PUT /api/identity/me - Update own profile
- GET /api/identity/{id} - Get identity by ID
- PUT /api/identity/{id} - Update details and lodge membership
- POST /api/identity/{id}/reset-password - Email a new random password
- PUT /api/identity/{id}/role - Change role
- DELETE /api/identity/{id} - Delete identity (LODGE_MEMBER only)

Permissions:
- list, by-email: any admin
- own profile: any authenticated identity
- get by id: the identity itself or any admin
- update, reset password, role change, delete: super admin, district admin
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from middleware.auth import AuthUser, get_current_user_required, require_admin, require_district_admin

from .dependencies import get_identity_service, get_identity_store
from .roles import is_admin_role
from .service import IdentityService
from .store import IdentityStore

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/identity", tags=["Identity"])


# ==================== REQUEST/RESPONSE MODELS ====================

class ChangeRoleRequest(BaseModel):
    """Request model for role changes"""
    role: str = Field(..., description="New role; historical spellings are normalised")


class ProfileUpdateRequest(BaseModel):
    """Request model for profile updates. Omitted fields are left unchanged."""
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    occupation: Optional[str] = None
    bio: Optional[str] = None
    interests: Optional[List[str]] = None
    profile_image: Optional[str] = None


class MemberUpdateRequest(ProfileUpdateRequest):
    """Request model for administrative member updates"""
    status: Optional[str] = None
    primary_lodge: Optional[Any] = None
    primary_lodge_position: Optional[str] = None
    lodges: Optional[List[Any]] = Field(None, description="Replaces the lodge list and lodge memberships")
    lodge_positions: Optional[Dict[str, str]] = Field(None, description="Lodge id -> officer position")


# ==================== ENDPOINTS ====================

@router.get("")
async def list_identities(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status_filter: Optional[str] = Query(None, alias="status"),
    current_user: AuthUser = Depends(require_admin),
    store: IdentityStore = Depends(get_identity_store)
):
    """
    List identities, oldest first.

    **Permissions:** any admin
    """
    try:
        identities = await store.list_identities(limit=limit, offset=offset, status=status_filter)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {
        "identities": [i.to_summary() for i in identities],
        "count": len(identities),
        "limit": limit,
        "offset": offset,
    }


@router.get("/by-email")
async def get_identity_by_email(
    email: str = Query(..., description="Email address"),
    current_user: AuthUser = Depends(require_admin),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Get identity by email address (case-insensitive).

    **Permissions:** any admin
    """
    try:
        identity = await service.get_by_email(email)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return identity.to_dict()


@router.put("/me")
async def update_own_profile(
    request: ProfileUpdateRequest,
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Update the current identity's name, email and profile fields.

    **Permissions:** any authenticated identity
    """
    try:
        identity = await service.update_profile(
            current_user.id,
            request.model_dump(exclude_none=True),
            performed_by=current_user.email,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return identity.to_dict()


@router.get("/{identity_id}")
async def get_identity(
    identity_id: str,
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Get identity by ID.

    **Permissions:** the identity itself, or any admin
    """
    if identity_id != current_user.id and not is_admin_role(current_user.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied"
        )

    identity = await service.get_identity(identity_id)
    return identity.to_dict()


@router.put("/{identity_id}")
async def update_member(
    identity_id: str,
    request: MemberUpdateRequest,
    current_user: AuthUser = Depends(require_district_admin),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Update a member's details, status and lodge membership.

    Passing ``lodges`` replaces the lodge list and lodge memberships;
    ``lodge_positions`` sets the officer position held at each of them.

    **Permissions:** super admin, district admin (for roles they could grant)
    """
    try:
        identity = await service.update_member(
            identity_id,
            request.model_dump(exclude_none=True),
            actor=current_user,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return {
        "success": True,
        "message": "Member updated successfully",
        "identity": identity.to_dict(),
    }


@router.post("/{identity_id}/reset-password")
async def reset_password(
    identity_id: str,
    current_user: AuthUser = Depends(require_district_admin),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Reset a member's password to a random one and email it to them.

    **Permissions:** super admin, district admin (for roles they could grant)
    """
    email_sent = await service.reset_password_for(identity_id, actor=current_user)
    return {
        "success": True,
        "message": "Password reset successful",
        "email_sent": email_sent,
    }


@router.put("/{identity_id}/role")
async def change_role(
    identity_id: str,
    request: ChangeRoleRequest,
    current_user: AuthUser = Depends(require_district_admin),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Change an identity's role.

    Only a super admin may grant SUPER_ADMIN or DISTRICT_ADMIN.

    **Permissions:** super admin, district admin
    """
    identity = await service.change_role(identity_id, request.role, actor=current_user)
    return {
        "success": True,
        "message": f"Role updated to: {identity.normalized_role}",
        "identity": identity.to_summary(),
    }


@router.delete("/{identity_id}")
async def delete_identity(
    identity_id: str,
    current_user: AuthUser = Depends(require_district_admin),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Delete an identity.

    Fails with 409 unless the identity's role is LODGE_MEMBER.

    **Permissions:** super admin, district admin
    """
    await service.delete_identity(identity_id, actor=current_user)
    return {"success": True, "message": "Identity deleted", "identity_id": identity_id}
