"""
Identity Core - Service Layer

Business logic over the identity store:
- Registration and administrative provisioning
- Login (store lookup -> credential check -> role normalisation -> token)
- Token refresh from current store data
- Password change, reset and forgot-password
- Profile and lodge membership updates
- Role changes and deletion
"""

import re
import secrets
import string
import logging
from typing import Optional, Dict, Any, List

from services.auth import AuthUser, CredentialVerifier, RegisterRequest, SessionIssuer

from .errors import (
    DeliveryUnavailable,
    InactiveAccount,
    InvalidCredentials,
    NotFound,
    PermissionDenied,
    PreconditionFailed,
)
from .lodge_ref import LodgeRef, canonical_lodges
from .models import IdentityDB, IdentityStatus, Position
from .roles import Role, normalize
from .store import IdentityStore, normalize_email

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
RESET_PASSWORD_LENGTH = 12
FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a new password has been sent."

# Roles each actor role may grant
GRANTABLE_ROLES = {
    Role.SUPER_ADMIN: frozenset(Role),
    Role.DISTRICT_ADMIN: frozenset({Role.LODGE_ADMIN, Role.LODGE_MEMBER}),
    Role.LODGE_ADMIN: frozenset({Role.LODGE_MEMBER}),
    Role.LODGE_MEMBER: frozenset(),
}
SELF_REGISTRATION_ROLES = frozenset({Role.LODGE_MEMBER})

# Request field -> key in the stored profile (extra_data)
PROFILE_KEYS = {
    "phone": "phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip_code": "zipCode",
    "country": "country",
    "occupation": "occupation",
    "bio": "bio",
    "interests": "interests",
    "profile_image": "profileImage",
}
PROFILE_FIELDS = frozenset({"name", "first_name", "last_name", "email", *PROFILE_KEYS})
MEMBERSHIP_FIELDS = frozenset({"status", "primary_lodge", "primary_lodge_position", "lodges", "lodge_positions"})


def validate_password(password: str) -> None:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")


def generate_password(length: int = RESET_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class IdentityService:
    """
    Identity Service - authentication and account lifecycle.

    Unknown emails and wrong passwords raise the same InvalidCredentials, and
    the account status is only revealed once the password has verified.
    """

    def __init__(
        self,
        store: IdentityStore,
        verifier: CredentialVerifier,
        issuer: SessionIssuer,
        email_client=None,
    ):
        self.store = store
        self.verifier = verifier
        self.issuer = issuer
        self.email_client = email_client

    # ==================== REGISTRATION ====================

    async def register(
        self,
        request: RegisterRequest,
        actor: Optional[AuthUser] = None,
    ) -> IdentityDB:
        """
        Create an identity.

        Without an actor only LODGE_MEMBER can be requested; admins may
        provision the roles below their own.

        Raises:
            ValueError: Invalid email, name or password
            PermissionDenied: Requested role not grantable by the actor
            DuplicateEmail: Email already registered
        """
        email = normalize_email(request.email)
        if not EMAIL_PATTERN.match(email):
            raise ValueError("Invalid email format")
        if not request.name or not request.name.strip():
            raise ValueError("Name is required")
        validate_password(request.password)

        role = normalize(request.role) if request.role else Role.LODGE_MEMBER
        allowed = GRANTABLE_ROLES[actor.role] if actor else SELF_REGISTRATION_ROLES
        if role not in allowed:
            raise PermissionDenied(f"Not allowed to register a {role.value}")

        lodges = canonical_lodges(request.lodges)
        primary = LodgeRef.coerce(request.primary_lodge)
        fields: Dict[str, Any] = {
            "email": email,
            "name": request.name.strip(),
            "credential_hash": self.verifier.hash(request.password),
            "role": role.value,
            "status": IdentityStatus.ACTIVE.value,
            "lodges": lodges,
            "primary_lodge": primary.value if primary else None,
            "administered_lodges": lodges if role == Role.LODGE_ADMIN else [],
        }

        identity = await self.store.create(fields, performed_by=actor.email if actor else "registration")
        logger.info(f"Registered identity {identity.id} with role {identity.role}")
        return identity

    # ==================== AUTHENTICATION ====================

    async def authenticate(self, email: str, password: str) -> IdentityDB:
        """
        Verify credentials and return the identity.

        Raises:
            InvalidCredentials: Unknown email or wrong password
            InactiveAccount: Correct password on a non-active account
        """
        try:
            identity = await self.store.find_by_email(email)
        except ValueError:
            identity = None

        if identity is None:
            # Spend the same hashing time as a real check
            self.verifier.verify(password, _DUMMY_HASH.get(self.verifier))
            logger.warning("Login failed: invalid credentials")
            raise InvalidCredentials()

        if not self.verifier.verify(password, identity.credential_hash):
            logger.warning("Login failed: invalid credentials")
            raise InvalidCredentials()

        if identity.status != IdentityStatus.ACTIVE.value:
            logger.warning(f"Login refused for non-active identity {identity.id}")
            raise InactiveAccount()

        await self.store.record_login(identity.id)
        return identity

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        identity = await self.authenticate(email, password)
        token = self.issuer.issue(identity)

        logger.info(f"Login successful: {identity.id}")
        return {
            "user": identity.to_summary(),
            "token": token,
            "token_type": "bearer",
            "expires_in": self.issuer.expires_in,
        }

    async def refresh(self, user_id: str) -> Dict[str, Any]:
        """Re-issue a token from the current stored record."""
        identity = await self.store.find_by_id(user_id)
        if identity is None or identity.status != IdentityStatus.ACTIVE.value:
            raise InvalidCredentials()

        return {
            "user": identity.to_summary(),
            "token": self.issuer.issue(identity),
            "token_type": "bearer",
            "expires_in": self.issuer.expires_in,
        }

    # ==================== PASSWORDS ====================

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        identity = await self.get_identity(user_id)
        if not self.verifier.verify(current_password, identity.credential_hash):
            raise InvalidCredentials()
        validate_password(new_password)

        await self.store.update(
            identity.id,
            {"credential_hash": self.verifier.hash(new_password)},
            performed_by=identity.email,
            action="password_change",
        )
        logger.info(f"Password changed for {identity.id}")

    async def reset_password(self, identity_id: str, new_password: str, performed_by: str) -> IdentityDB:
        validate_password(new_password)
        return await self.store.update(
            identity_id,
            {"credential_hash": self.verifier.hash(new_password)},
            performed_by=performed_by,
            action="password_reset",
        )

    async def forgot_password(self, email: str) -> str:
        """
        Reset an active account's password to a random one and email it.

        Returns the same message whether or not the account exists.
        """
        try:
            identity = await self.store.find_by_email(email)
        except ValueError:
            identity = None

        if identity is None or identity.status != IdentityStatus.ACTIVE.value:
            return FORGOT_PASSWORD_MESSAGE
        if self.email_client is None or not self.email_client.is_ready():
            logger.error("Forgot-password requested but email is not configured")
            return FORGOT_PASSWORD_MESSAGE

        await self._send_new_password(identity, performed_by="forgot_password")
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password_for(self, identity_id: str, actor: AuthUser) -> bool:
        """
        Administrative reset: set a random password and email it to the member.

        Returns whether the email was accepted by the provider.

        Raises:
            PermissionDenied: If the actor does not outrank the identity
            DeliveryUnavailable: If email is not configured; nothing is changed
        """
        identity = await self.get_identity(identity_id)
        self._check_manages(actor, identity)
        if self.email_client is None or not self.email_client.is_ready():
            raise DeliveryUnavailable()

        sent = await self._send_new_password(identity, performed_by=actor.email)
        logger.info(f"Password of {identity.id} reset by {actor.email}")
        return sent

    async def _send_new_password(self, identity: IdentityDB, performed_by: str) -> bool:
        new_password = generate_password()
        await self.reset_password(identity.id, new_password, performed_by=performed_by)

        result = self.email_client.send(
            to=identity.email,
            subject="Your password has been reset",
            text=(
                f"Hello {identity.display_name},\n\n"
                f"Your password has been reset. Your new password is: {new_password}\n\n"
                "Please log in and change it immediately."
            ),
            html=(
                f"<p>Hello {identity.display_name},</p>"
                f"<p>Your password has been reset. Your new password is: "
                f"<code>{new_password}</code></p>"
                "<p>Please log in and change it immediately.</p>"
            ),
        )
        if not result.success:
            logger.error(f"Password reset email failed for {identity.id}: {result.error}")
        return result.success

    # ==================== PROFILE AND MEMBERSHIP ====================

    async def update_profile(self, identity_id: str, changes: Dict[str, Any], performed_by: str) -> IdentityDB:
        """
        Update personal details: name, email and profile fields.

        Profile fields are merged into the stored profile; anything not
        given is left unchanged.
        """
        identity = await self.get_identity(identity_id)
        fields = self._profile_fields(identity, changes)
        if not fields:
            return identity
        return await self.store.update(identity.id, fields, performed_by=performed_by, action="profile_update")

    async def update_member(self, identity_id: str, changes: Dict[str, Any], actor: AuthUser) -> IdentityDB:
        """
        Administrative update of personal details, status and lodge membership.

        ``lodges`` replaces the member's lodge list and their lodge
        memberships together: each listed lodge gets one membership whose
        position comes from ``lodge_positions``, else the position already
        held there, else MEMBER.

        Raises:
            PermissionDenied: If the actor does not outrank the identity
            ValueError: Unknown fields, positions or statuses
        """
        identity = await self.get_identity(identity_id)
        self._check_manages(actor, identity)

        unknown = set(changes) - PROFILE_FIELDS - MEMBERSHIP_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        fields = self._profile_fields(identity, {k: v for k, v in changes.items() if k in PROFILE_FIELDS})
        if changes.get("status") is not None:
            fields["status"] = IdentityStatus(changes["status"]).value
        if changes.get("primary_lodge") is not None:
            fields["primary_lodge"] = LodgeRef.parse(changes["primary_lodge"]).value
        if changes.get("primary_lodge_position") is not None:
            fields["primary_lodge_position"] = Position(changes["primary_lodge_position"]).value

        positions = changes.get("lodge_positions")
        if changes.get("lodges") is not None:
            fields["lodges"] = canonical_lodges(changes["lodges"])
            fields["lodge_memberships"] = build_memberships(
                identity.lodge_memberships, fields["lodges"], positions or {}
            )
        elif positions:
            raise ValueError("lodge_positions requires lodges")

        if not fields:
            return identity
        updated = await self.store.update(identity.id, fields, performed_by=actor.email, action="member_update")
        logger.info(f"Identity {updated.id} updated by {actor.email}: {sorted(fields)}")
        return updated

    @staticmethod
    def _profile_fields(identity: IdentityDB, changes: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        fields: Dict[str, Any] = {}
        if changes.get("email") is not None:
            email = normalize_email(changes["email"])
            if not EMAIL_PATTERN.match(email):
                raise ValueError("Invalid email format")
            fields["email"] = email

        for key in ("name", "first_name", "last_name"):
            if changes.get(key) is not None:
                value = changes[key].strip()
                if not value:
                    raise ValueError(f"{key} cannot be empty")
                fields[key] = value
        if "name" not in fields and ("first_name" in fields or "last_name" in fields):
            fields.setdefault("first_name", identity.first_name)
            fields.setdefault("last_name", identity.last_name)

        profile = {
            PROFILE_KEYS[key]: value
            for key, value in changes.items()
            if key in PROFILE_KEYS and value is not None
        }
        if profile:
            fields["extra_data"] = {**(identity.extra_data or {}), **profile}
        return fields

    # ==================== ADMINISTRATION ====================

    async def get_identity(self, identity_id: str) -> IdentityDB:
        identity = await self.store.find_by_id(identity_id)
        if identity is None:
            raise NotFound(f"Identity {identity_id} not found")
        return identity

    async def get_by_email(self, email: str) -> IdentityDB:
        identity = await self.store.find_by_email(email)
        if identity is None:
            raise NotFound(f"Identity with email {email} not found")
        return identity

    async def change_role(self, identity_id: str, raw_role: str, actor: AuthUser) -> IdentityDB:
        """
        Change an identity's role.

        The actor must be able to grant both the new role and the target's
        current one. Downgrading to LODGE_MEMBER also clears administered
        lodges.
        """
        role = normalize(raw_role)
        if role not in GRANTABLE_ROLES[actor.role] or not actor.is_district_admin():
            raise PermissionDenied(f"Not allowed to assign {role.value}")

        identity = await self.get_identity(identity_id)
        self._check_manages(actor, identity)
        fields: Dict[str, Any] = {"role": role.value}
        if role == Role.LODGE_MEMBER:
            fields["administered_lodges"] = []

        updated = await self.store.update(identity.id, fields, performed_by=actor.email, action="role_change")
        logger.info(f"Role of {updated.id} changed from {normalize(identity.role).value} to {role.value}")
        return updated

    async def delete_identity(self, identity_id: str, actor: AuthUser) -> None:
        """
        Delete an identity. Admin roles must be downgraded first.

        Raises:
            PreconditionFailed: If the identity still holds an admin role
        """
        identity = await self.get_identity(identity_id)
        if normalize(identity.role) != Role.LODGE_MEMBER:
            raise PreconditionFailed("Identity must be downgraded to LODGE_MEMBER before deletion")

        await self.store.delete(identity.id, performed_by=actor.email)

    @staticmethod
    def _check_manages(actor: AuthUser, identity: IdentityDB) -> None:
        """District-level admins manage identities whose role they could grant."""
        target = normalize(identity.role)
        if not actor.is_district_admin() or target not in GRANTABLE_ROLES[actor.role]:
            raise PermissionDenied(f"Not allowed to manage a {target.value}")


def build_memberships(
    existing: Any,
    lodges: List[str],
    positions: Dict[str, Any],
) -> List[Dict[str, Any]]:
    """
    One membership per lodge, in the order given.

    Existing entries for a kept lodge keep their other details (dates,
    active flag). Positions must name lodges in the list.
    """
    held: Dict[str, Dict[str, Any]] = {}
    for entry in existing or []:
        ref = LodgeRef.coerce(entry.get("lodge")) if isinstance(entry, dict) else None
        if ref is not None:
            held.setdefault(ref.value, entry)

    wanted = {LodgeRef.parse(lodge).value: Position(position).value for lodge, position in positions.items()}
    stray = set(wanted) - set(lodges)
    if stray:
        raise ValueError(f"Positions given for lodges not in the list: {sorted(stray)}")

    memberships = []
    for lodge in lodges:
        entry = held.get(lodge, {})
        memberships.append({
            **entry,
            "lodge": lodge,
            "position": wanted.get(lodge) or entry.get("position") or Position.MEMBER.value,
        })
    return memberships


class _DummyHash:
    """One throwaway hash per verifier, for constant-effort failed lookups."""

    def __init__(self):
        self._hashes: Dict[int, str] = {}

    def get(self, verifier: CredentialVerifier) -> str:
        if verifier.rounds not in self._hashes:
            self._hashes[verifier.rounds] = verifier.hash(generate_password())
        return self._hashes[verifier.rounds]


_DUMMY_HASH = _DummyHash()
