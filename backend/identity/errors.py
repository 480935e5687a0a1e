"""
Identity Core - Error Taxonomy

Typed failures raised by the identity store and services. Each error
carries the HTTP status the API layer responds with, so routers never
re-derive the mapping.
"""

from fastapi import status


class IdentityError(Exception):
    """Base class for identity core failures"""
    status_code = status.HTTP_400_BAD_REQUEST
    code = "identity_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class NotFound(IdentityError):
    """Identity not found"""
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class DuplicateEmail(IdentityError):
    """Email already in use"""
    status_code = status.HTTP_409_CONFLICT
    code = "duplicate_email"


class InvalidCredentials(IdentityError):
    """Invalid email or password"""
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "invalid_credentials"

    def __init__(self, message: str = ""):
        # Message is fixed so unknown emails and wrong passwords look identical
        super().__init__("Invalid email or password")


class InactiveAccount(IdentityError):
    """Account is not active"""
    status_code = status.HTTP_403_FORBIDDEN
    code = "inactive_account"


class PermissionDenied(IdentityError):
    """Permission denied"""
    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class PreconditionFailed(IdentityError):
    """Precondition failed"""
    status_code = status.HTTP_409_CONFLICT
    code = "precondition_failed"


class DeliveryUnavailable(IdentityError):
    """Email delivery is not configured"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "delivery_unavailable"


class ConfigurationError(Exception):
    """Required configuration is missing or invalid. Fatal at startup."""
    pass
