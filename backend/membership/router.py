"""
Membership - API Router

- GET /api/lodges/members - Members across several lodges (district admins)
- GET /api/lodges/{lodge_id}/members - Members of a lodge
- GET /api/lodges/{lodge_id}/members/count - Member count
- GET /api/lodges/{lodge_id}/positions - Occupied officer positions
- POST /api/lodges/{lodge_id}/transfer-admin - Hand lodge administration to a member

All endpoints require authentication.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, Field

from identity.dependencies import get_membership_resolver, get_transfer_service
from middleware.auth import AuthUser, get_current_user_required, require_district_admin

from .resolver import MembershipResolver
from .transfer import AdminTransferService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/lodges", tags=["Membership"])


class TransferAdminRequest(BaseModel):
    """Request model for admin transfer"""
    from_email: str = Field(..., description="Email of the current admin")
    to_email: str = Field(..., description="Email of the member taking over")


@router.get("/members")
async def list_members_of_lodges(
    lodge_id: List[str] = Query(..., description="Lodge ids; repeat the parameter for each lodge"),
    current_user: AuthUser = Depends(require_district_admin),
    resolver: MembershipResolver = Depends(get_membership_resolver)
):
    """
    Members of several lodges, each identity listed once.

    **Permissions:** super admin, district admin
    """
    try:
        members = await resolver.members_of_lodges(lodge_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {
        "lodge_ids": lodge_id,
        "members": [m.to_summary() for m in members],
        "count": len(members),
    }


@router.get("/{lodge_id}/members")
async def list_members(
    lodge_id: str,
    current_user: AuthUser = Depends(get_current_user_required),
    resolver: MembershipResolver = Depends(get_membership_resolver)
):
    """
    Members of a lodge across primary lodge, lodge memberships and the
    legacy lodge list. Each identity appears once.
    """
    try:
        members = await resolver.members_of_lodge(lodge_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {
        "lodge_id": lodge_id,
        "members": [m.to_summary() for m in members],
        "count": len(members),
    }


@router.get("/{lodge_id}/members/count")
async def count_members(
    lodge_id: str,
    current_user: AuthUser = Depends(get_current_user_required),
    resolver: MembershipResolver = Depends(get_membership_resolver)
):
    try:
        count = await resolver.member_count(lodge_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return {"lodge_id": lodge_id, "count": count}


@router.get("/{lodge_id}/positions")
async def occupied_positions(
    lodge_id: str,
    current_user: AuthUser = Depends(get_current_user_required),
    resolver: MembershipResolver = Depends(get_membership_resolver)
):
    """Officer positions currently held at a lodge."""
    try:
        positions = await resolver.occupied_positions(lodge_id)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return {"lodge_id": lodge_id, "occupied_positions": sorted(positions)}


@router.post("/{lodge_id}/transfer-admin")
async def transfer_admin(
    lodge_id: str,
    request: TransferAdminRequest,
    current_user: AuthUser = Depends(get_current_user_required),
    transfers: AdminTransferService = Depends(get_transfer_service)
):
    """
    Transfer lodge administration.

    The candidate must already be a member of the lodge. For the district
    lodge the role transferred is DISTRICT_ADMIN, otherwise LODGE_ADMIN.

    **Permissions:** the current admin, or a super admin
    """
    try:
        result = await transfers.transfer_admin(
            lodge_id,
            from_email=request.from_email,
            to_email=request.to_email,
            actor=current_user,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    return result.to_dict()
