from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from tenantauth.schemas import (
    ChangePasswordRequest,
    ChangePasswordResult,
    GetUserProfileRequest,
    LoginRequest,
    LoginResult,
    LogoutRequest,
    LogoutResult,
    RefreshTokenRequest,
    RefreshTokenResult,
    RegisterUserRequest,
    RegisterUserResult,
    UserProfileResult,
    ValidateTokenRequest,
    ValidateTokenResult,
)
from tenantauth.service.errors import status_for
from tenantauth.service.runtime import get_runtime

router = APIRouter(prefix="/v1")


def _respond(result, *, success_status: int = 200) -> JSONResponse:
    """Serialize an engine result with the status its error code maps to."""
    status_code = success_status if result.error_code is None else status_for(result.error_code)
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


def _extract_bearer(header: Optional[str]) -> str:
    if not header:
        return ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


@router.post(
    "/auth/register", response_model=RegisterUserResult, status_code=201, tags=["auth"]
)
async def register(body: RegisterUserRequest):
    """Create a user under an existing client.

    Raises:
        400: missing or malformed fields, unknown client
        409: email already registered for this client
    """
    runtime = get_runtime()
    result = await runtime.auth.register_user(body)
    return _respond(result, success_status=201)


@router.post("/auth/login", response_model=LoginResult, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Exchange email and password for an access token and a refresh token."""
    runtime = get_runtime()
    if not body.user_agent:
        body = body.model_copy(update={"user_agent": request.headers.get("user-agent")})
    result = await runtime.auth.login(body)
    return _respond(result)


@router.post("/auth/validate", response_model=ValidateTokenResult, tags=["auth"])
async def validate(body: ValidateTokenRequest):
    runtime = get_runtime()
    result = await runtime.auth.validate_token(body)
    return _respond(result)


@router.post("/auth/refresh", response_model=RefreshTokenResult, tags=["auth"])
async def refresh(body: RefreshTokenRequest):
    """Rotate a refresh token; the presented value stops working on success."""
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body)
    return _respond(result)


@router.post("/auth/logout", response_model=LogoutResult, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    result = await runtime.auth.logout(body)
    return _respond(result)


@router.post("/auth/password/change", response_model=ChangePasswordResult, tags=["auth"])
async def change_password(body: ChangePasswordRequest):
    """Change the password and revoke every session of the user."""
    runtime = get_runtime()
    result = await runtime.auth.change_password(body)
    return _respond(result)


@router.get("/auth/profile", response_model=UserProfileResult, tags=["auth"])
async def profile(authorization: Optional[str] = Header(default=None)):
    runtime = get_runtime()
    result = await runtime.auth.get_user_profile(
        GetUserProfileRequest(access_token=_extract_bearer(authorization))
    )
    return _respond(result)
