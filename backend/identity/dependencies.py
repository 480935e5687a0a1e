"""
Identity Core - FastAPI dependency providers

Builds the store, services and resolver per request from a database
session and the cached settings. Tests replace these through
``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db
from email_integration import EmailClient
from membership.resolver import MembershipResolver
from membership.transfer import AdminTransferService
from services.auth import CredentialVerifier, SessionIssuer

from .service import IdentityService
from .store import IdentityStore


@lru_cache()
def get_credential_verifier() -> CredentialVerifier:
    return CredentialVerifier(rounds=get_settings().BCRYPT_ROUNDS)


@lru_cache()
def get_session_issuer() -> SessionIssuer:
    return SessionIssuer.from_settings(get_settings())


@lru_cache()
def get_email_client() -> EmailClient:
    return EmailClient.from_settings(get_settings())


def get_identity_store(db: AsyncSession = Depends(get_db)) -> IdentityStore:
    return IdentityStore(db)


def get_identity_service(
    store: IdentityStore = Depends(get_identity_store),
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    issuer: SessionIssuer = Depends(get_session_issuer),
    email_client: EmailClient = Depends(get_email_client),
) -> IdentityService:
    return IdentityService(store, verifier, issuer, email_client)


def get_membership_resolver(store: IdentityStore = Depends(get_identity_store)) -> MembershipResolver:
    return MembershipResolver(store)


def get_transfer_service(
    store: IdentityStore = Depends(get_identity_store),
    resolver: MembershipResolver = Depends(get_membership_resolver),
) -> AdminTransferService:
    return AdminTransferService(store, resolver, district_lodge_id=get_settings().DISTRICT_LODGE_ID)
