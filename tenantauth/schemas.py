"""Request and result models for the session lifecycle engine.

Request fields default to empty strings so a missing field surfaces as a
``validation_error`` result from the engine instead of a parser failure.
Results never raise; they carry ``success`` (``valid`` for token checks),
a caller-safe ``message`` and an ``error_code`` that is None on success.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from tenantauth.service.errors import ErrorCode, ServiceError
from tenantauth.storage.models import User


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore")


class RegisterUserRequest(_Request):
    username: str = ""
    email: str = ""
    password: str = ""
    client_id: str = ""


class LoginRequest(_Request):
    email: str = ""
    password: str = ""
    client_id: str = ""
    user_agent: Optional[str] = None


class ValidateTokenRequest(_Request):
    access_token: str = ""


class RefreshTokenRequest(_Request):
    refresh_token: str = ""
    client_id: str = ""


class LogoutRequest(_Request):
    refresh_token: str = ""


class ChangePasswordRequest(_Request):
    access_token: str = ""
    current_password: str = ""
    new_password: str = ""


class GetUserProfileRequest(_Request):
    access_token: str = ""


class RegisterClientRequest(_Request):
    name: str = ""


class UserProfile(BaseModel):
    """Public view of a user; never carries the password hash."""

    id: str
    username: str
    email: str
    client_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            client_id=user.client_id,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class _Result(BaseModel):
    message: str = ""
    error_code: Optional[ErrorCode] = None

    @classmethod
    def failure(cls, exc: ServiceError):
        return cls(message=exc.message, error_code=exc.error_code)


class ErrorResult(_Result):
    """Body for failures raised outside an engine operation."""

    success: bool = False


class RegisterUserResult(_Result):
    success: bool = False
    user_id: Optional[str] = None


class LoginResult(_Result):
    success: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    user: Optional[UserProfile] = None


class ValidateTokenResult(_Result):
    valid: bool = False
    user_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    user: Optional[UserProfile] = None


class RefreshTokenResult(_Result):
    success: bool = False
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None


class LogoutResult(_Result):
    success: bool = False


class ChangePasswordResult(_Result):
    success: bool = False


class UserProfileResult(_Result):
    success: bool = False
    user: Optional[UserProfile] = None


class RegisterClientResult(_Result):
    success: bool = False
    client_id: Optional[str] = None
    # Returned once; only the hash is stored
    client_secret: Optional[str] = None


class HealthCheckResult(BaseModel):
    status: Literal["serving", "not_serving"]
    version: str
    details: Dict[str, Any] = Field(default_factory=dict)
