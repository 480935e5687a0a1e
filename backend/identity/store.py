"""
Identity Store - Persistence for canonical identities

The only component that reads or writes identity rows. Every lookup and
write lowercases the email first, every write goes through the same field
preparation (role normalisation, name invariant, lodge canonicalisation)
and every mutation is recorded in the identity audit log.
"""

import uuid
import logging
from typing import Optional, Dict, Any, List, Union

from sqlalchemy import select, func, update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import DuplicateEmail, NotFound
from .lodge_ref import LodgeRef, canonical_lodges
from .models import IdentityDB, IdentityAuditLogDB, IdentityStatus, Position, utcnow
from .roles import normalize

logger = logging.getLogger(__name__)

IdentityId = Union[str, uuid.UUID]

WRITABLE_FIELDS = frozenset({
    "email", "name", "first_name", "last_name", "credential_hash", "role",
    "status", "primary_lodge", "primary_lodge_position", "lodges",
    "lodge_memberships", "administered_lodges", "extra_data", "last_login",
})
CREDENTIAL_FIELDS = frozenset({"credential_hash"})


def normalize_email(email: str) -> str:
    if not isinstance(email, str) or not email.strip():
        raise ValueError("Email is required")
    return email.strip().lower()


def parse_identity_id(identity_id: IdentityId) -> Optional[uuid.UUID]:
    if isinstance(identity_id, uuid.UUID):
        return identity_id
    try:
        return uuid.UUID(str(identity_id))
    except (ValueError, TypeError):
        return None


def prepare_memberships(memberships: Any) -> List[Dict[str, Any]]:
    """
    Canonicalise lodge membership entries.

    Raises ValueError when a lodge appears twice: a person holds at most one
    position per lodge.
    """
    prepared = []
    seen = set()
    for entry in memberships or []:
        if not isinstance(entry, dict):
            raise ValueError("Lodge membership entries must be objects")
        ref = LodgeRef.parse(entry.get("lodge"))
        if ref.value in seen:
            raise ValueError(f"Duplicate membership for lodge {ref.value}")
        seen.add(ref.value)
        prepared.append({
            **entry,
            "lodge": ref.value,
            "position": entry.get("position") or Position.MEMBER.value,
        })
    return prepared


def prepare_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and canonicalise writable identity fields."""
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown identity fields: {sorted(unknown)}")

    prepared = dict(fields)
    if "email" in prepared:
        prepared["email"] = normalize_email(prepared["email"])
    if "role" in prepared:
        prepared["role"] = normalize(prepared["role"]).value
    if "status" in prepared:
        prepared["status"] = IdentityStatus(prepared["status"]).value
    if "primary_lodge" in prepared:
        ref = LodgeRef.coerce(prepared["primary_lodge"])
        prepared["primary_lodge"] = ref.value if ref else None
    for key in ("lodges", "administered_lodges"):
        if key in prepared:
            prepared[key] = canonical_lodges(prepared[key])
    if "lodge_memberships" in prepared:
        prepared["lodge_memberships"] = prepare_memberships(prepared["lodge_memberships"])

    # Only one name representation is kept at rest
    if prepared.get("name"):
        prepared["first_name"] = None
        prepared["last_name"] = None
    elif prepared.get("first_name") or prepared.get("last_name"):
        prepared["name"] = None

    return prepared


class IdentityStore:
    """
    Identity Store - canonical identity persistence.

    Ensures:
    - Case-insensitive email uniqueness
    - Normalised roles and lodge references at rest
    - Audit trail for all mutations
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== READS ====================

    async def find_by_email(self, email: str) -> Optional[IdentityDB]:
        """Find identity by email (case-insensitive)."""
        result = await self.db.execute(
            select(IdentityDB).where(func.lower(IdentityDB.email) == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def find_by_id(self, identity_id: IdentityId) -> Optional[IdentityDB]:
        """Find identity by ID. Malformed IDs are simply not found."""
        pid = parse_identity_id(identity_id)
        if pid is None:
            return None
        result = await self.db.execute(select(IdentityDB).where(IdentityDB.id == pid))
        return result.scalar_one_or_none()

    async def reload(self, identity_id: IdentityId) -> Optional[IdentityDB]:
        """
        Re-read an identity from the database.

        Unlike find_by_id, objects already in the session are overwritten
        with the current row, so changes committed elsewhere are seen.
        """
        pid = parse_identity_id(identity_id)
        if pid is None:
            return None
        result = await self.db.execute(
            select(IdentityDB)
            .where(IdentityDB.id == pid)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_matching(self, clause) -> List[IdentityDB]:
        """All identities satisfying a SQL predicate, oldest first."""
        result = await self.db.execute(
            select(IdentityDB).where(clause).order_by(IdentityDB.created_at)
        )
        return list(result.scalars().all())

    async def count_matching(self, clause) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(IdentityDB).where(clause)
        )
        return result.scalar_one() or 0

    async def list_identities(
        self,
        limit: int = 100,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> List[IdentityDB]:
        query = select(IdentityDB).order_by(IdentityDB.created_at)
        if status:
            query = query.where(IdentityDB.status == IdentityStatus(status).value)
        result = await self.db.execute(query.limit(limit).offset(offset))
        return list(result.scalars().all())

    # ==================== WRITES ====================

    async def create(
        self,
        fields: Dict[str, Any],
        performed_by: str = "system",
        action: str = "create",
    ) -> IdentityDB:
        """
        Create a new identity.

        Raises:
            DuplicateEmail: If the email already exists (case-insensitive)
            ValueError: If fields are invalid
        """
        prepared = prepare_fields(fields)
        if "email" not in prepared:
            raise ValueError("Email is required")
        if not (prepared.get("name") or prepared.get("first_name") or prepared.get("last_name")):
            raise ValueError("Name is required")

        existing = await self.find_by_email(prepared["email"])
        if existing:
            raise DuplicateEmail(f"Identity with email {prepared['email']} already exists")

        now = utcnow()
        identity = IdentityDB(
            id=uuid.uuid4(),
            role=prepared.pop("role", normalize(None).value),
            status=prepared.pop("status", IdentityStatus.ACTIVE.value),
            lodges=prepared.pop("lodges", []),
            lodge_memberships=prepared.pop("lodge_memberships", []),
            administered_lodges=prepared.pop("administered_lodges", []),
            extra_data=prepared.pop("extra_data", None) or {},
            created_at=now,
            updated_at=now,
            **prepared,
        )
        self.db.add(identity)
        self.record_action(
            identity_id=identity.id,
            action=action,
            performed_by=performed_by,
            details={"email": identity.email, "role": identity.role},
        )

        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail(f"Identity with email {identity.email} already exists")
        await self.db.refresh(identity)

        logger.info(f"Created identity: {identity.id} ({identity.email})")
        return identity

    async def update(
        self,
        identity_id: IdentityId,
        fields: Dict[str, Any],
        performed_by: str = "system",
        action: str = "update",
    ) -> IdentityDB:
        """
        Apply a partial update.

        Raises:
            NotFound: If the identity does not exist
            DuplicateEmail: If the new email belongs to another identity
        """
        updated = await self.update_many({identity_id: fields}, performed_by=performed_by, action=action)
        return updated[0]

    async def update_many(
        self,
        updates: Dict[IdentityId, Dict[str, Any]],
        performed_by: str = "system",
        action: str = "update",
    ) -> List[IdentityDB]:
        """
        Apply several partial updates in a single transaction.

        Either every update is committed or none is: a missing identity or a
        failed commit rolls the whole batch back.
        """
        identities = []
        try:
            for identity_id, fields in updates.items():
                identity = await self.find_by_id(identity_id)
                if identity is None:
                    raise NotFound(f"Identity {identity_id} not found")

                prepared = prepare_fields(fields)
                if "email" in prepared and prepared["email"] != identity.email:
                    other = await self.find_by_email(prepared["email"])
                    if other is not None and other.id != identity.id:
                        raise DuplicateEmail(f"Identity with email {prepared['email']} already exists")

                for key, value in prepared.items():
                    setattr(identity, key, value)
                identity.updated_at = utcnow()

                self.record_action(
                    identity_id=identity.id,
                    action=action,
                    performed_by=performed_by,
                    details=self._describe_changes(prepared),
                )
                identities.append(identity)

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateEmail("Update conflicts with an existing identity email")
        except Exception:
            await self.db.rollback()
            raise

        for identity in identities:
            await self.db.refresh(identity)

        logger.info(f"Identity {action}: {[str(i.id) for i in identities]} by {performed_by}")
        return identities

    async def record_login(self, identity_id: IdentityId) -> None:
        """Stamp last_login. Not audited."""
        pid = parse_identity_id(identity_id)
        await self.db.execute(
            sql_update(IdentityDB).where(IdentityDB.id == pid).values(last_login=utcnow())
        )
        await self.db.commit()

    async def delete(self, identity_id: IdentityId, performed_by: str = "system") -> IdentityDB:
        identity = await self.find_by_id(identity_id)
        if identity is None:
            raise NotFound(f"Identity {identity_id} not found")

        self.record_action(
            identity_id=identity.id,
            action="delete",
            performed_by=performed_by,
            details={"email": identity.email},
        )
        await self.db.delete(identity)
        await self.db.commit()

        logger.info(f"Deleted identity: {identity.id} ({identity.email})")
        return identity

    # ==================== HELPER METHODS ====================

    @staticmethod
    def _describe_changes(prepared: Dict[str, Any]) -> Dict[str, Any]:
        """Audit details for an update; credential values are never recorded."""
        details: Dict[str, Any] = {"fields": sorted(prepared)}
        if "role" in prepared:
            details["role"] = prepared["role"]
        if CREDENTIAL_FIELDS & set(prepared):
            details["credential_changed"] = True
        return details

    def record_action(
        self,
        identity_id: uuid.UUID,
        action: str,
        performed_by: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an audit row to the current transaction."""
        self.db.add(IdentityAuditLogDB(
            identity_id=identity_id,
            action=action,
            performed_by=performed_by,
            details=details or {},
        ))
