from fastapi import APIRouter, Depends, HTTPException, status, Request
from typing import Optional
import logging

from identity.dependencies import get_identity_service, get_membership_resolver
from identity.errors import InvalidCredentials, InactiveAccount
from identity.service import IdentityService
from membership.resolver import MembershipResolver
from services.auth import (
    LoginRequest,
    RegisterRequest,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    AuthUser,
)
from middleware.auth import get_current_user_required, get_current_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["Authentication"])


# Helper to extract request metadata for logging
def _get_request_metadata(request: Request) -> dict:
    """Extract IP address and user agent from request"""
    ip_address = None
    user_agent = request.headers.get("user-agent", "")[:500] if request else None

    if request:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip()
        else:
            real_ip = request.headers.get("x-real-ip")
            if real_ip:
                ip_address = real_ip
            elif request.client:
                ip_address = request.client.host

    return {"ip_address": ip_address, "user_agent": user_agent}


# ==================== PUBLIC ENDPOINTS ====================

@router.post("/login")
async def login(
    login_data: LoginRequest,
    request: Request,
    service: IdentityService = Depends(get_identity_service)
):
    """
    Authenticate with email and password.

    Returns the identity summary and a bearer token. Unknown emails and
    wrong passwords get the same 401 response.

    Example:
    ```json
    {
      "email": "member@example.org",
      "password": "correct-horse"
    }
    ```
    """
    try:
        return await service.login(login_data.email, login_data.password)
    except (InvalidCredentials, InactiveAccount) as e:
        logger.warning(f"Login rejected ({e.code})", extra=_get_request_metadata(request))
        raise


@router.post("/register")
async def register(
    register_data: RegisterRequest,
    current_user: Optional[AuthUser] = Depends(get_current_user),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Register a new identity.

    Anonymous callers may only register LODGE_MEMBER accounts; an
    authenticated admin may provision the roles below their own.
    """
    try:
        identity = await service.register(register_data, actor=current_user)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {
        "success": True,
        "message": "User registered successfully",
        "user": identity.to_summary(),
    }


@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordRequest,
    service: IdentityService = Depends(get_identity_service)
):
    """
    Email a new random password to an active account.

    The response is identical whether or not the account exists.
    """
    if not body.email or not body.email.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email is required"
        )
    message = await service.forgot_password(body.email)
    return {"message": message}


# ==================== AUTHENTICATED ENDPOINTS ====================

@router.get("/me")
async def get_current_user_info(
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentityService = Depends(get_identity_service),
    resolver: MembershipResolver = Depends(get_membership_resolver)
):
    """
    Current identity, reloaded from the store.

    ``member_of`` lists every lodge the identity belongs to, by any
    membership representation.
    """
    identity = await service.get_identity(current_user.id)
    return {**identity.to_dict(), "member_of": resolver.lodges_of(identity)}


@router.post("/refresh")
async def refresh_token(
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Re-issue a token for the current identity.

    Claims come from the stored record, so role changes made since the
    last login are picked up.
    """
    return await service.refresh(current_user.id)


@router.post("/change-password")
async def change_password(
    password_data: ChangePasswordRequest,
    current_user: AuthUser = Depends(get_current_user_required),
    service: IdentityService = Depends(get_identity_service)
):
    """
    Change current user's password.

    Requires current password for verification.
    """
    try:
        await service.change_password(
            user_id=current_user.id,
            current_password=password_data.current_password,
            new_password=password_data.new_password
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )

    return {"success": True, "message": "Password changed successfully"}


@router.get("/verify")
async def verify_token(
    current_user: Optional[AuthUser] = Depends(get_current_user)
):
    """
    Verify if a token is valid.

    Returns user info if valid, null if invalid or no token.
    """
    if not current_user:
        return {"valid": False, "user": None}

    return {
        "valid": True,
        "user": {
            "id": current_user.id,
            "email": current_user.email,
            "role": current_user.role.value
        }
    }
