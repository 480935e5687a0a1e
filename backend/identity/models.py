"""
Identity Core - Database Models

SQLAlchemy models for the canonical identity record and its audit trail.
Lodge references live in JSONB columns so both the plain string form and
the legacy typed form ({"$oid": ...}) can be stored and queried.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any

from sqlalchemy import Column, String, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import declarative_base

from .lodge_ref import LodgeRef, canonical_lodges
from .roles import normalize

Base = declarative_base()


class IdentityStatus(str, Enum):
    """Identity account status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"


class Position(str, Enum):
    """Lodge officer positions"""
    # Elected officers
    WORSHIPFUL_MASTER = "WORSHIPFUL_MASTER"
    SENIOR_WARDEN = "SENIOR_WARDEN"
    JUNIOR_WARDEN = "JUNIOR_WARDEN"
    TREASURER = "TREASURER"
    SECRETARY = "SECRETARY"
    # Appointed officers
    SENIOR_DEACON = "SENIOR_DEACON"
    JUNIOR_DEACON = "JUNIOR_DEACON"
    SENIOR_STEWARD = "SENIOR_STEWARD"
    JUNIOR_STEWARD = "JUNIOR_STEWARD"
    CHAPLAIN = "CHAPLAIN"
    MARSHAL = "MARSHAL"
    TYLER = "TYLER"
    MUSICIAN = "MUSICIAN"
    # Other
    MASTER_OF_CEREMONIES = "MASTER_OF_CEREMONIES"
    HISTORIAN = "HISTORIAN"
    LODGE_EDUCATION_OFFICER = "LODGE_EDUCATION_OFFICER"
    ALMONER = "ALMONER"
    # No officer position; shared by any number of members
    MEMBER = "MEMBER"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IdentityDB(Base):
    """
    Identity - Canonical Person Record

    Email is unique (stored lowercase) and is the natural key for lookup
    and merge decisions. Either ``name`` or ``first_name``/``last_name`` is
    stored, never both.
    """
    __tablename__ = "identity"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255))
    first_name = Column(String(100))
    last_name = Column(String(100))
    credential_hash = Column(String(255))
    role = Column(String(30), nullable=False, default="LODGE_MEMBER")
    status = Column(String(30), nullable=False, default=IdentityStatus.ACTIVE.value)

    primary_lodge = Column(JSONB)
    primary_lodge_position = Column(String(50), default=Position.MEMBER.value)
    lodges = Column(JSONB, default=list)
    lodge_memberships = Column(JSONB, default=list)
    administered_lodges = Column(JSONB, default=list)

    extra_data = Column("metadata", JSONB, default=dict)  # legacy profile fields
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        parts = [self.first_name, self.last_name]
        return " ".join(p for p in parts if p) or self.email

    @property
    def normalized_role(self) -> str:
        return normalize(self.role).value

    @property
    def primary_lodge_id(self) -> Optional[str]:
        ref = LodgeRef.coerce(self.primary_lodge)
        return ref.value if ref else None

    def to_summary(self) -> Dict[str, Any]:
        """Identity summary safe to return to clients."""
        return {
            "id": str(self.id),
            "email": self.email,
            "name": self.display_name,
            "role": self.normalized_role,
            "status": self.status,
            "primary_lodge": self.primary_lodge_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary. The credential hash is never included."""
        return {
            **self.to_summary(),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "primary_lodge_position": self.primary_lodge_position or Position.MEMBER.value,
            "lodges": canonical_lodges(self.lodges),
            "lodge_memberships": [
                {
                    "lodge": str(LodgeRef.coerce(m.get("lodge"))),
                    "position": m.get("position") or Position.MEMBER.value,
                }
                for m in (self.lodge_memberships or [])
                if isinstance(m, dict) and LodgeRef.coerce(m.get("lodge"))
            ],
            "administered_lodges": canonical_lodges(self.administered_lodges),
            "profile": {k: v for k, v in (self.extra_data or {}).items() if k != "legacy_sources"},
            "last_login": self.last_login.isoformat() if self.last_login else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class IdentityAuditLogDB(Base):
    """
    Identity Audit Log - Trail of identity mutations

    identity_id is not a foreign key so rows survive identity deletion.
    """
    __tablename__ = "identity_audit_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    identity_id = Column(UUID(as_uuid=True), index=True)
    action = Column(String(50), nullable=False)  # create, update, role_change, admin_transfer, delete, migrate...
    performed_by = Column(String(255))
    details = Column(JSONB, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "identity_id": str(self.identity_id) if self.identity_id else None,
            "action": self.action,
            "performed_by": self.performed_by,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
