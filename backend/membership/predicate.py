"""
Membership Predicate

The single definition of "identity X belongs to lodge L". A person belongs
to L when L is their primary lodge, when one of their lodge memberships
points at L, or when the legacy ``lodges`` list contains L. Each branch is
checked against every stored shape of the identifier.

``membership_clause`` is the SQL form used to fetch candidates;
``belongs_to`` is the same rule evaluated on a loaded identity.
"""

from typing import Any, Dict, List, Set

from sqlalchemy import or_

from identity.lodge_ref import LodgeRef
from identity.models import IdentityDB, Position


def membership_clause(lodge: LodgeRef):
    """SQL OR of the three membership branches over both identifier forms."""
    branches = []
    for form in lodge.stored_forms():
        branches.append(IdentityDB.primary_lodge.contains(form))
        branches.append(IdentityDB.lodges.contains([form]))
        branches.append(IdentityDB.lodge_memberships.contains([{"lodge": form}]))
    return or_(*branches)


def membership_entries(identity) -> List[Dict[str, Any]]:
    return [m for m in (identity.lodge_memberships or []) if isinstance(m, dict)]


def belongs_to(identity, lodge: LodgeRef) -> bool:
    if lodge.matches(identity.primary_lodge):
        return True
    if any(lodge.matches(raw) for raw in (identity.lodges or [])):
        return True
    return any(lodge.matches(m.get("lodge")) for m in membership_entries(identity))


def positions_at(identity, lodge: LodgeRef) -> Set[str]:
    """Officer positions an identity holds at a lodge, MEMBER excluded."""
    positions = set()
    if lodge.matches(identity.primary_lodge):
        positions.add(identity.primary_lodge_position)
    for entry in membership_entries(identity):
        if lodge.matches(entry.get("lodge")):
            positions.add(entry.get("position"))
    return {p for p in positions if p and p != Position.MEMBER.value}


def lodges_of(identity) -> List[str]:
    """Every lodge an identity belongs to, canonical and de-duplicated."""
    found: List[str] = []
    candidates = [identity.primary_lodge, *(identity.lodges or [])]
    candidates.extend(m.get("lodge") for m in membership_entries(identity))
    for raw in candidates:
        ref = LodgeRef.coerce(raw)
        if ref is not None and ref.value not in found:
            found.append(ref.value)
    return found
