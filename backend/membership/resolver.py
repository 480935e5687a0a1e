"""
Membership Resolver - lodge -> people

Every membership feature (member lists, officer positions, admin transfer,
district-wide aggregation) goes through this resolver so the membership
rule is defined exactly once, in ``membership.predicate``.
"""

import logging
from typing import Any, Iterable, List, Set

from identity.lodge_ref import LodgeRef
from identity.models import IdentityDB
from identity.store import IdentityStore

from .predicate import belongs_to, lodges_of, membership_clause, positions_at

logger = logging.getLogger(__name__)


class MembershipResolver:
    """Resolves lodge membership across every historical representation."""

    def __init__(self, store: IdentityStore):
        self.store = store

    async def members_of_lodge(self, lodge_id: Any) -> List[IdentityDB]:
        """
        All identities belonging to a lodge.

        The SQL clause fetches candidates; each is then re-checked with the
        in-memory predicate and the union is de-duplicated by id, keeping the
        first occurrence.

        Raises:
            ValueError: If no lodge id is given
        """
        lodge = LodgeRef.parse(lodge_id)
        candidates = await self.store.find_matching(membership_clause(lodge))
        members = _unique_by_id(c for c in candidates if belongs_to(c, lodge))

        logger.debug(f"Lodge {lodge} resolved to {len(members)} members")
        return members

    async def members_of_lodges(self, lodge_ids: Iterable[Any]) -> List[IdentityDB]:
        """Union of the members of several lodges, each identity once."""
        everyone: List[IdentityDB] = []
        for lodge_id in lodge_ids:
            everyone.extend(await self.members_of_lodge(lodge_id))
        return _unique_by_id(everyone)

    async def member_count(self, lodge_id: Any) -> int:
        lodge = LodgeRef.parse(lodge_id)
        return await self.store.count_matching(membership_clause(lodge))

    async def occupied_positions(self, lodge_id: Any) -> Set[str]:
        """Officer positions currently held at a lodge. Never includes MEMBER."""
        lodge = LodgeRef.parse(lodge_id)
        occupied: Set[str] = set()
        for identity in await self.members_of_lodge(lodge):
            occupied |= positions_at(identity, lodge)
        return occupied

    @staticmethod
    def is_member(identity: IdentityDB, lodge_id: Any) -> bool:
        lodge = LodgeRef.coerce(lodge_id)
        if identity is None or lodge is None:
            return False
        return belongs_to(identity, lodge)

    @staticmethod
    def lodges_of(identity: IdentityDB) -> List[str]:
        return lodges_of(identity)


def _unique_by_id(identities: Iterable[IdentityDB]) -> List[IdentityDB]:
    seen = set()
    unique = []
    for identity in identities:
        if identity.id in seen:
            continue
        seen.add(identity.id)
        unique.append(identity)
    return unique
