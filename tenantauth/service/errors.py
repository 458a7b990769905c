from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable failure kinds surfaced in every engine result."""

    VALIDATION_ERROR = "validation_error"
    INVALID_CLIENT = "invalid_client"
    INVALID_CREDENTIALS = "invalid_credentials"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    INVALID_TOKEN = "invalid_token"
    INVALID = "invalid"
    INTERNAL = "internal"


class ServiceError(Exception):
    """Base class for engine failures that become result values.

    Each subclass pins an ``error_code`` and the HTTP ``status_code`` the
    transport adapter uses for it:
    - validation_error (400)
    - invalid_client (400)
    - invalid_credentials (401)
    - invalid_token (401)
    - invalid (401)
    - not_found (404)
    - already_exists (409)
    - internal (500)
    """

    status_code: int = 400
    error_code: ErrorCode = ErrorCode.VALIDATION_ERROR
    default_message: str = "Invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[ErrorCode] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Missing or malformed caller input (400)."""
    status_code = 400
    error_code = ErrorCode.VALIDATION_ERROR


class InvalidClientError(ServiceError):
    status_code = 400
    error_code = ErrorCode.INVALID_CLIENT
    default_message = "Invalid client ID"


class InvalidCredentialsError(ServiceError):
    """Unknown email, foreign tenant and wrong password all look the same (401)."""
    status_code = 401
    error_code = ErrorCode.INVALID_CREDENTIALS
    default_message = "Invalid credentials"


class AlreadyExistsError(ServiceError):
    status_code = 409
    error_code = ErrorCode.ALREADY_EXISTS
    default_message = "Email already registered"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = ErrorCode.NOT_FOUND
    default_message = "User not found"


class InvalidRefreshTokenError(ServiceError):
    """Unknown, expired or superseded refresh value (401)."""
    status_code = 401
    error_code = ErrorCode.INVALID_TOKEN
    default_message = "Invalid refresh token"


class InvalidAccessTokenError(ServiceError):
    """Access credential failed signature, expiry, claim or session checks (401)."""
    status_code = 401
    error_code = ErrorCode.INVALID
    default_message = "Invalid token"


class InternalError(ServiceError):
    status_code = 500
    error_code = ErrorCode.INTERNAL
    default_message = "Internal server error"


def status_for(code: Optional[ErrorCode | str]) -> int:
    """HTTP status for an error code; 200 when there is none."""
    if code is None:
        return 200
    return _STATUS_BY_CODE.get(ErrorCode(code), 500)


_STATUS_BY_CODE = {
    cls.error_code: cls.status_code
    for cls in (
        ValidationError,
        InvalidClientError,
        InvalidCredentialsError,
        AlreadyExistsError,
        NotFoundError,
        InvalidRefreshTokenError,
        InvalidAccessTokenError,
        InternalError,
    )
}


__all__ = [
    "ErrorCode",
    "ServiceError",
    "ValidationError",
    "InvalidClientError",
    "InvalidCredentialsError",
    "AlreadyExistsError",
    "NotFoundError",
    "InvalidRefreshTokenError",
    "InvalidAccessTokenError",
    "InternalError",
    "status_for",
]
