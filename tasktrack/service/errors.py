from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure categories surfaced by the service layer."""

    VALIDATION_FAILED = "validation_failed"
    ALREADY_EXISTS = "already_exists"
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_VERIFIED = "not_verified"
    LOCKED = "locked"
    TOKEN_EXPIRED = "token_expired"
    INVALID_TOKEN = "invalid_token"
    NOT_FOUND = "not_found"
    EMAIL_DELIVERY_FAILED = "email_delivery_failed"
    AUTHENTICATION_REQUIRED = "authentication_required"
    FORBIDDEN = "forbidden"
    GENERIC = "generic"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an ``ErrorKind``; the HTTP status for a kind lives in
    one table in ``tasktrack.api.error_handling``.
    """

    kind: ErrorKind = ErrorKind.GENERIC

    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFailedError(ServiceError):
    kind = ErrorKind.VALIDATION_FAILED


class AlreadyExistsError(ServiceError):
    """Email or handle already belongs to another identity."""
    kind = ErrorKind.ALREADY_EXISTS


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; the two are never told apart."""
    kind = ErrorKind.INVALID_CREDENTIALS


class NotVerifiedError(ServiceError):
    kind = ErrorKind.NOT_VERIFIED


class AccountLockedError(ServiceError):
    kind = ErrorKind.LOCKED


class TokenExpiredError(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED


class InvalidTokenError(ServiceError):
    kind = ErrorKind.INVALID_TOKEN


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class EmailDeliveryError(ServiceError):
    kind = ErrorKind.EMAIL_DELIVERY_FAILED


class AuthenticationRequiredError(ServiceError):
    kind = ErrorKind.AUTHENTICATION_REQUIRED


class ForbiddenError(ServiceError):
    kind = ErrorKind.FORBIDDEN


class ServerError(ServiceError):
    kind = ErrorKind.GENERIC


class ConfigurationError(RuntimeError):
    """Raised at startup when settings cannot produce a safe runtime."""


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationFailedError",
    "AlreadyExistsError",
    "InvalidCredentialsError",
    "NotVerifiedError",
    "AccountLockedError",
    "TokenExpiredError",
    "InvalidTokenError",
    "NotFoundError",
    "EmailDeliveryError",
    "AuthenticationRequiredError",
    "ForbiddenError",
    "ServerError",
    "ConfigurationError",
]
