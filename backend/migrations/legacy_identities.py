"""
Legacy Identities Migration

Merges exported legacy person documents (``users``, ``members`` and
``unifiedusers`` collections, exported as JSON) into canonical identities.

Merge rules:
- Documents are keyed by lowercase email; users first, then members, then unifiedusers
- Personal fields are only filled where still missing
- The higher-ranked role wins
- Lodge lists are unioned; a lodge keeps its first membership entry
- Legacy ``lodgePositions`` maps become lodge memberships
- ``password`` fields are kept if already bcrypt, otherwise hashed; non-string hashes are dropped

Usage:
    python -m migrations.legacy_identities --users users.json --members members.json \
        --unified unifiedusers.json [--dry-run]
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from identity.errors import DuplicateEmail
from identity.lodge_ref import LodgeRef, canonical_lodges
from identity.models import IdentityStatus, Position
from identity.roles import normalize, role_rank
from identity.store import IdentityStore
from services.auth import CredentialVerifier

logger = logging.getLogger(__name__)

MIGRATION_ACTOR = "legacy_migration"
COLLECTION_ORDER = ("users", "members", "unifiedusers")
PROFILE_FIELDS = (
    "phone", "address", "city", "state", "zipCode", "country",
    "occupation", "bio", "interests", "profileImage", "memberSince",
)
UNKNOWN_NAME = "Unknown User"


def load_documents(path: Path) -> List[Dict[str, Any]]:
    """
    Read an export file: a JSON array, or one JSON document per line.
    """
    content = Path(path).read_text(encoding="utf-8").strip()
    if not content:
        return []
    if content.startswith("["):
        return json.loads(content)
    return [json.loads(line) for line in content.splitlines() if line.strip()]


def parse_date(raw: Any) -> Optional[datetime]:
    """Parse ISO strings and extended-JSON ``{"$date": ...}`` values."""
    if isinstance(raw, dict):
        raw = raw.get("$date")
        if isinstance(raw, dict):
            raw = raw.get("$numberLong")
    if raw is None or raw == "":
        return None
    if isinstance(raw, (int, float)) or (isinstance(raw, str) and raw.isdigit()):
        return datetime.fromtimestamp(int(raw) / 1000).astimezone()
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable date {raw!r}")
        return None


def _text(raw: Any) -> Optional[str]:
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


class LegacyIdentityMerger:
    """Accumulates legacy documents into one merged record per email."""

    def __init__(self, verifier: CredentialVerifier):
        self.verifier = verifier
        self.records: Dict[str, Dict[str, Any]] = {}
        self.skipped = 0

    def add_all(self, documents: Iterable[Dict[str, Any]], source: str) -> None:
        for doc in documents:
            self.add(doc, source)

    def add(self, doc: Dict[str, Any], source: str) -> None:
        email = _text(doc.get("email"))
        if not email:
            self.skipped += 1
            logger.warning(f"Skipping {source} document without email: {doc.get('_id')}")
            return
        email = email.lower()

        record = self.records.setdefault(email, {
            "email": email,
            "credential_hash": None,
            "role": None,
            "status": None,
            "primary_lodge": None,
            "primary_lodge_position": None,
            "lodges": [],
            "lodge_memberships": [],
            "administered_lodges": [],
            "extra_data": {"legacy_sources": []},
        })
        record["extra_data"]["legacy_sources"].append(source)

        self._merge_name(record, doc)
        self._merge_credential(record, doc, email)
        self._merge_role(record, doc)
        self._merge_lodges(record, doc)

        if record["status"] is None and _text(doc.get("status")):
            record["status"] = doc["status"].strip().lower()
        if record.get("last_login") is None:
            last_login = parse_date(doc.get("lastLogin"))
            if last_login is not None:
                record["last_login"] = last_login

        for key in PROFILE_FIELDS:
            value = doc.get(key)
            if value in (None, "", []):
                continue
            if isinstance(value, dict) and "$date" in value:
                value = value["$date"]
            record["extra_data"].setdefault(key, value)

    # ==================== FIELD MERGES ====================

    @staticmethod
    def _merge_name(record: Dict[str, Any], doc: Dict[str, Any]) -> None:
        if record.get("name") or record.get("first_name") or record.get("last_name"):
            return
        name = _text(doc.get("name"))
        if name:
            record["name"] = name
            return
        first, last = _text(doc.get("firstName")), _text(doc.get("lastName"))
        if first or last:
            record["first_name"] = first
            record["last_name"] = last

    def _merge_credential(self, record: Dict[str, Any], doc: Dict[str, Any], email: str) -> None:
        if record["credential_hash"]:
            return
        stored = doc.get("passwordHash")
        if stored is not None and not isinstance(stored, str):
            logger.warning(f"Dropping non-string password hash for {email}")
            stored = None
        if _text(stored):
            record["credential_hash"] = stored
            return

        password = doc.get("password")
        if not isinstance(password, str) or not password:
            return
        # members documents store password already hashed
        if self.verifier.is_hash(password):
            record["credential_hash"] = password
            return
        record["credential_hash"] = self.verifier.hash(password)
        logger.info(f"Hashed legacy plaintext password for {email}")

    @staticmethod
    def _merge_role(record: Dict[str, Any], doc: Dict[str, Any]) -> None:
        if "role" not in doc:
            return
        role = normalize(doc.get("role"))
        if record["role"] is None or role_rank(role) > role_rank(record["role"]):
            record["role"] = role.value

    @staticmethod
    def _merge_lodges(record: Dict[str, Any], doc: Dict[str, Any]) -> None:
        primary = LodgeRef.coerce(doc.get("primaryLodge"))
        if record["primary_lodge"] is None and primary is not None:
            record["primary_lodge"] = primary.value
            record["primary_lodge_position"] = _text(doc.get("primaryLodgePosition"))

        record["lodges"] = canonical_lodges([*record["lodges"], *(doc.get("lodges") or [])])
        record["administered_lodges"] = canonical_lodges(
            [*record["administered_lodges"], *(doc.get("administeredLodges") or [])]
        )

        memberships = record["lodge_memberships"]
        held = {m["lodge"] for m in memberships}

        def add_membership(raw_lodge: Any, position: Any, entry: Optional[Dict[str, Any]] = None):
            ref = LodgeRef.coerce(raw_lodge)
            if ref is None or ref.value in held:
                return
            held.add(ref.value)
            membership = {"lodge": ref.value, "position": _text(position) or Position.MEMBER.value}
            for key in ("startDate", "endDate", "isActive"):
                if entry and key in entry:
                    value = entry[key]
                    membership[key] = value["$date"] if isinstance(value, dict) and "$date" in value else value
            memberships.append(membership)

        for entry in doc.get("lodgeMemberships") or []:
            if isinstance(entry, dict):
                add_membership(entry.get("lodge"), entry.get("position"), entry)

        lodge_positions = doc.get("lodgePositions")
        if isinstance(lodge_positions, dict):
            for lodge_id, position in lodge_positions.items():
                add_membership(lodge_id, position)

    # ==================== OUTPUT ====================

    def merged(self) -> List[Dict[str, Any]]:
        """Canonical identity fields, one dict per email, in first-seen order."""
        results = []
        for record in self.records.values():
            fields = {k: v for k, v in record.items() if v is not None}
            if not (fields.get("name") or fields.get("first_name") or fields.get("last_name")):
                fields["name"] = UNKNOWN_NAME
            fields["role"] = normalize(record["role"]).value
            fields["status"] = self._status(record["status"], record["email"])
            fields["primary_lodge_position"] = record["primary_lodge_position"] or Position.MEMBER.value
            results.append(fields)
        return results

    @staticmethod
    def _status(raw: Optional[str], email: str) -> str:
        if raw is None:
            return IdentityStatus.ACTIVE.value
        try:
            return IdentityStatus(raw).value
        except ValueError:
            logger.warning(f"Unknown status {raw!r} for {email}, marking inactive")
            return IdentityStatus.INACTIVE.value


async def migrate(store: IdentityStore, merged: List[Dict[str, Any]], dry_run: bool = False) -> Dict[str, int]:
    """
    Write merged identities. Existing emails are updated in place.

    Returns counts of created, updated and failed identities.
    """
    counts = {"created": 0, "updated": 0, "failed": 0}
    for fields in merged:
        if dry_run:
            existing = await store.find_by_email(fields["email"])
            counts["updated" if existing else "created"] += 1
            continue
        try:
            existing = await store.find_by_email(fields["email"])
            if existing is None:
                await store.create(fields, performed_by=MIGRATION_ACTOR, action="migrate")
                counts["created"] += 1
            else:
                update = {k: v for k, v in fields.items() if k != "email"}
                await store.update(existing.id, update, performed_by=MIGRATION_ACTOR, action="migrate")
                counts["updated"] += 1
        except (ValueError, DuplicateEmail) as e:
            counts["failed"] += 1
            logger.error(f"Failed to migrate {fields['email']}: {e}")
    return counts


async def run(paths: Dict[str, Optional[Path]], dry_run: bool = False) -> Dict[str, int]:
    from config import get_settings
    from database import get_session_factory, close_db, init_db

    settings = get_settings()
    merger = LegacyIdentityMerger(CredentialVerifier(rounds=settings.BCRYPT_ROUNDS))
    for source in COLLECTION_ORDER:
        path = paths.get(source)
        if path:
            documents = load_documents(path)
            logger.info(f"Loaded {len(documents)} {source} documents from {path}")
            merger.add_all(documents, source)

    merged = merger.merged()
    logger.info(f"Merged into {len(merged)} identities ({merger.skipped} documents skipped)")

    await init_db(create_tables=not dry_run)
    try:
        async with get_session_factory()() as session:
            counts = await migrate(IdentityStore(session), merged, dry_run=dry_run)
    finally:
        await close_db()

    logger.info(f"Migration finished: {counts}")
    return counts


if __name__ == "__main__":
    import argparse

    from logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Merge legacy person exports into identities")
    parser.add_argument("--users", type=Path, help="users collection export")
    parser.add_argument("--members", type=Path, help="members collection export")
    parser.add_argument("--unified", type=Path, help="unifiedusers collection export")
    parser.add_argument("--dry-run", action="store_true", help="Report counts without writing")
    args = parser.parse_args()

    setup_logging(json_format=False)
    asyncio.run(run(
        {"users": args.users, "members": args.members, "unifiedusers": args.unified},
        dry_run=args.dry_run,
    ))
