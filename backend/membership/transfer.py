"""
Admin Transfer

Hands administration of a lodge from its current admin to a member of that
lodge. For the district lodge the transferred role is DISTRICT_ADMIN, for
any other lodge it is LODGE_ADMIN. The outgoing admin is downgraded to
LODGE_MEMBER and the candidate promoted in a single transaction. A candidate
who already ranks higher keeps their role.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from identity.errors import NotFound, PermissionDenied, PreconditionFailed
from identity.lodge_ref import LodgeRef, canonical_lodges
from identity.models import IdentityDB
from identity.roles import Role, normalize, role_rank
from identity.store import IdentityStore
from services.auth import AuthUser

from .resolver import MembershipResolver

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    lodge_id: str
    role: Role
    previous_admin: IdentityDB
    new_admin: IdentityDB

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": f"{self.role.value} transferred from {self.previous_admin.email} to {self.new_admin.email}",
            "lodge_id": self.lodge_id,
            "role": self.role.value,
            "previous_admin": self.previous_admin.to_summary(),
            "new_admin": self.new_admin.to_summary(),
        }


class AdminTransferService:
    """
    Two-party role swap guarded by the membership resolver.

    Preconditions are checked once up front and again on freshly re-read
    records immediately before the write.
    """

    def __init__(
        self,
        store: IdentityStore,
        resolver: MembershipResolver,
        district_lodge_id: Optional[str] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.district_lodge = LodgeRef.coerce(district_lodge_id)

    def role_for_lodge(self, lodge: LodgeRef) -> Role:
        if self.district_lodge is not None and self.district_lodge == lodge:
            return Role.DISTRICT_ADMIN
        return Role.LODGE_ADMIN

    async def transfer_admin(
        self,
        lodge_id: Any,
        from_email: str,
        to_email: str,
        actor: AuthUser,
    ) -> TransferResult:
        """
        Transfer administration of a lodge.

        Raises:
            NotFound: If either identity does not exist
            PermissionDenied: If the actor may not transfer, or the current
                admin does not hold the role being transferred
            PreconditionFailed: If the candidate is the current admin or is
                not a member of the lodge
        """
        lodge = LodgeRef.parse(lodge_id)
        role = self.role_for_lodge(lodge)

        current = await self.store.find_by_email(from_email)
        if current is None:
            raise NotFound(f"Current admin {from_email} not found")
        candidate = await self.store.find_by_email(to_email)
        if candidate is None:
            raise NotFound(f"Candidate {to_email} not found")

        if actor.role != Role.SUPER_ADMIN and actor.id != str(current.id):
            raise PermissionDenied("Only the current admin or a super admin can transfer admin rights")
        if current.id == candidate.id:
            raise PreconditionFailed("Cannot transfer admin rights to the same person")

        self._check_preconditions(lodge, role, current, candidate)

        # Re-read both records right before writing
        current = await self.store.reload(current.id)
        candidate = await self.store.reload(candidate.id)
        if current is None or candidate is None:
            raise NotFound("Identity removed during transfer")
        self._check_preconditions(lodge, role, current, candidate)

        updates = {
            current.id: {
                "role": Role.LODGE_MEMBER.value,
                "administered_lodges": [
                    ref for ref in canonical_lodges(current.administered_lodges) if ref != lodge.value
                ],
            },
            candidate.id: {
                "role": max(role, normalize(candidate.role), key=role_rank).value,
                "administered_lodges": canonical_lodges(
                    [*(candidate.administered_lodges or []), lodge.value]
                ),
            },
        }
        previous_admin, new_admin = await self.store.update_many(
            updates,
            performed_by=actor.email,
            action="admin_transfer",
        )

        logger.info(
            f"{role.value} for lodge {lodge} transferred from {previous_admin.email} "
            f"to {new_admin.email} by {actor.email}"
        )
        return TransferResult(
            lodge_id=lodge.value,
            role=role,
            previous_admin=previous_admin,
            new_admin=new_admin,
        )

    def _check_preconditions(
        self,
        lodge: LodgeRef,
        role: Role,
        current: IdentityDB,
        candidate: IdentityDB,
    ) -> None:
        if normalize(current.role) != role:
            raise PermissionDenied(f"{current.email} is not a {role.value}")
        if not self.resolver.is_member(candidate, lodge):
            raise PreconditionFailed(f"{candidate.email} is not a member of lodge {lodge}")
