"""
Authentication Primitives for the Lodge Identity Core

Implements:
- Credential verification (bcrypt via passlib, fixed work factor)
- Session tokens (JWT via python-jose)
- Request/response models shared by the auth endpoints

Roles:
- SUPER_ADMIN: full access
- DISTRICT_ADMIN: district-wide administration
- LODGE_ADMIN: administration of administered lodges
- LODGE_MEMBER: member endpoints only
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, List, Any, Dict
import logging

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, Field

from identity.errors import ConfigurationError
from identity.roles import Role, normalize

logger = logging.getLogger(__name__)

DEFAULT_BCRYPT_ROUNDS = 12
DEFAULT_TOKEN_EXPIRE_HOURS = 24
ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"


# ==================== MODELS ====================

class TokenClaims(BaseModel):
    """Data extracted from a verified session token"""
    user_id: str
    email: str
    role: Role
    name: Optional[str] = None
    lodge_id: Optional[str] = None
    exp: Optional[datetime] = None
    token_type: str = ACCESS_TOKEN_TYPE


class LoginRequest(BaseModel):
    """Login request body"""
    email: str
    password: str


class RegisterRequest(BaseModel):
    """Registration request body"""
    email: str
    password: str
    name: str
    role: Optional[str] = None
    lodges: List[str] = Field(default_factory=list)
    primary_lodge: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    """Change password request"""
    current_password: str
    new_password: str


class ForgotPasswordRequest(BaseModel):
    email: str


class AuthUser(BaseModel):
    """Authenticated user context"""
    id: str
    email: str
    role: Role
    name: Optional[str] = None
    lodge_id: Optional[str] = None

    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    def is_district_admin(self) -> bool:
        return self.role in (Role.SUPER_ADMIN, Role.DISTRICT_ADMIN)


# ==================== CREDENTIAL VERIFIER ====================

class CredentialVerifier:
    """
    Hashes and verifies passwords with bcrypt.

    ``verify`` never raises: missing, non-string or malformed hashes are a
    failed verification. Legacy data holds hashes stored as objects; those
    are rejected rather than coerced.
    """

    def __init__(self, rounds: int = DEFAULT_BCRYPT_ROUNDS):
        self.rounds = rounds
        self._context = CryptContext(
            schemes=["bcrypt"],
            deprecated="auto",
            bcrypt__rounds=rounds,
        )

    def hash(self, plaintext: str) -> str:
        if not isinstance(plaintext, str) or not plaintext:
            raise ValueError("Password is required")
        return self._context.hash(plaintext)

    def is_hash(self, value: Any) -> bool:
        """True if value is already a bcrypt hash rather than a plaintext password."""
        if not isinstance(value, str) or not value:
            return False
        try:
            return self._context.identify(value, required=False) is not None
        except (ValueError, TypeError):
            return False

    def verify(self, plaintext: Any, credential_hash: Any) -> bool:
        if not isinstance(plaintext, str) or not plaintext:
            return False
        if not isinstance(credential_hash, str) or not credential_hash:
            if credential_hash is not None:
                logger.warning(f"Rejecting stored credential of type {type(credential_hash).__name__}")
            return False

        try:
            return self._context.verify(plaintext, credential_hash)
        except (ValueError, TypeError) as e:
            logger.warning(f"Password verification error: {e}")
            return False


# ==================== SESSION ISSUER ====================

class SessionIssuer:
    """
    Issues and validates signed bearer tokens.

    The signing secret is required; constructing an issuer without one is a
    configuration error, never a fallback to a built-in default.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = ALGORITHM,
        expire_hours: int = DEFAULT_TOKEN_EXPIRE_HOURS,
    ):
        if not secret_key:
            raise ConfigurationError("JWT_SECRET_KEY is not set")
        self._secret_key = secret_key
        self.algorithm = algorithm
        self.expire_hours = expire_hours

    @classmethod
    def from_settings(cls, settings) -> "SessionIssuer":
        return cls(
            secret_key=settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            expire_hours=settings.JWT_EXPIRE_HOURS,
        )

    @property
    def expires_in(self) -> int:
        """Token lifetime in seconds"""
        return self.expire_hours * 3600

    def issue(self, identity, expires_delta: Optional[timedelta] = None) -> str:
        """Create a token for an identity record"""
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(hours=self.expire_hours))

        to_encode: Dict[str, Any] = {
            "sub": str(identity.id),
            "email": identity.email,
            "role": normalize(identity.role).value,
            "name": identity.display_name,
            "lodge_id": identity.primary_lodge_id,
            "type": ACCESS_TOKEN_TYPE,
            "exp": expire,
            "iat": now,
        }
        return jwt.encode(to_encode, self._secret_key, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[TokenClaims]:
        """Decode and validate a token. Returns None when invalid or expired."""
        if not token or not isinstance(token, str):
            return None

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.warning(f"JWT decode error: {e}")
            return None

        user_id = payload.get("sub")
        email = payload.get("email")
        if not user_id or not email or "role" not in payload:
            return None

        token_type = payload.get("type", ACCESS_TOKEN_TYPE)
        if token_type != ACCESS_TOKEN_TYPE:
            return None

        exp = payload.get("exp")
        return TokenClaims(
            user_id=user_id,
            email=email,
            role=normalize(payload.get("role")),
            name=payload.get("name"),
            lodge_id=payload.get("lodge_id"),
            exp=datetime.fromtimestamp(exp, tz=timezone.utc) if exp else None,
            token_type=token_type,
        )
