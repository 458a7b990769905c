from __future__ import annotations

import asyncio
import hmac
import re
import secrets
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Tuple, Type, TypeVar

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.schemas import (
    ChangePasswordRequest,
    ChangePasswordResult,
    GetUserProfileRequest,
    HealthCheckResult,
    LoginRequest,
    LoginResult,
    LogoutRequest,
    LogoutResult,
    RefreshTokenRequest,
    RefreshTokenResult,
    RegisterClientRequest,
    RegisterClientResult,
    RegisterUserRequest,
    RegisterUserResult,
    UserProfile,
    UserProfileResult,
    ValidateTokenRequest,
    ValidateTokenResult,
)
from tenantauth.service.errors import (
    AlreadyExistsError,
    InternalError,
    InvalidAccessTokenError,
    InvalidClientError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from tenantauth.service.passwords import PasswordHasher
from tenantauth.service.tokens import AccessClaims, TokenCodec, TokenError, TokenExpired
from tenantauth.storage.common import normalize_email, operation_deadline
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import Client, Session, User, utcnow

__version__ = "1.0.0"

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MIN_PASSWORD_LENGTH = 8
MAX_USERNAME_LENGTH = 100
MAX_EMAIL_LENGTH = 255
MAX_CLIENT_NAME_LENGTH = 100
MAX_USER_AGENT_LENGTH = 500
REFRESH_TOKEN_BYTES = 48
CLIENT_SECRET_BYTES = 32

logger = get_logger(__name__)

R = TypeVar("R")


class AuthStore(Protocol):
    def ping(self) -> bool: ...

    def create_client(self, client: Client) -> Client: ...

    def get_client(self, client_id: str) -> Optional[Client]: ...

    def client_exists(self, client_id: str) -> bool: ...

    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str, client_id: str) -> Optional[User]: ...

    def email_exists(self, email: str, client_id: str) -> bool: ...

    def update_user(self, user: User) -> Optional[User]: ...

    def upsert_session(self, session: Session) -> Session: ...

    def get_session_for_user(self, user_id: str, client_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def rotate_session(
        self, old_refresh_token: str, new_refresh_token: str, expires_at: datetime
    ) -> Optional[Session]: ...

    def delete_session_by_refresh_token(self, refresh_token: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self) -> int: ...


class AuthService:
    """Session lifecycle engine: registration, login, validation, rotation and revocation.

    Every public operation returns a result model and never raises. Failures
    inside an operation are ``ServiceError`` subclasses that the boundary
    wrapper turns into ``error_code``/``message`` pairs; anything else is
    logged and reported as ``internal``. Store calls made by one operation
    share a deadline of ``store_timeout_seconds``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.hasher = hasher or PasswordHasher()
        self.codec = codec or TokenCodec(settings)
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    # boundary
    async def _run(
        self,
        operation: str,
        result_cls: Type[R],
        handler: Callable[[Any], R],
        request: Any,
    ) -> R:
        # Argon2 and blocking store calls stay off the event loop
        return await asyncio.to_thread(
            self._guarded, operation, result_cls, handler, request
        )

    def _guarded(
        self,
        operation: str,
        result_cls: Type[R],
        handler: Callable[[Any], R],
        request: Any,
    ) -> R:
        try:
            with operation_deadline(self.settings.store_timeout_seconds):
                return handler(request)
        except ServiceError as exc:
            log_fn = self.logger.error if exc.status_code >= 500 else self.logger.info
            log_fn(
                "auth_operation_rejected",
                operation=operation,
                error_code=exc.error_code.value,
                reason=exc.message,
            )
            return result_cls.failure(exc)
        except Exception as exc:
            self.logger.exception(
                "auth_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
            )
            return result_cls.failure(InternalError())

    # helpers
    def _new_refresh_value(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def _refresh_expiry(self) -> datetime:
        return utcnow() + timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def _burn_password_check(self, password: str) -> None:
        """Spend one verify on a throwaway hash so unknown emails cost the same as wrong passwords."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))
        self.hasher.verify(password, self._dummy_hash)

    def _decode(self, access_token: str) -> AccessClaims:
        try:
            return self.codec.decode(access_token)
        except TokenExpired:
            self.logger.info("access_token_expired")
            raise InvalidAccessTokenError() from None
        except TokenError as exc:
            self.logger.warning("access_token_rejected", reason=str(exc))
            raise InvalidAccessTokenError() from None

    def _authenticate(
        self, access_token: str, *, require_session: bool = True
    ) -> Tuple[AccessClaims, User]:
        """Decode ``access_token`` and cross-check it against live state.

        The user must still exist with the same username and client, and
        unless ``require_session`` is False the (user, client) session must
        still hold the refresh value the token was issued against.
        """
        claims = self._decode(access_token)
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise NotFoundError()
        if user.username != claims.username or user.client_id != claims.client_id:
            self.logger.warning("access_token_claim_mismatch", user_id=user.id)
            raise InvalidAccessTokenError()
        if require_session:
            session = self.store.get_session_for_user(user.id, claims.client_id)
            if session is None or not hmac.compare_digest(
                session.refresh_token, claims.refresh_token
            ):
                self.logger.info("access_token_session_mismatch", user_id=user.id)
                raise InvalidAccessTokenError()
        return claims, user

    def _validate_registration(self, req: RegisterUserRequest) -> Tuple[str, str]:
        username = (req.username or "").strip()
        email = (req.email or "").strip()
        if not username:
            raise ValidationError("username is required")
        if len(username) > MAX_USERNAME_LENGTH:
            raise ValidationError(
                f"username must be at most {MAX_USERNAME_LENGTH} characters long"
            )
        if not email:
            raise ValidationError("email is required")
        if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
            raise ValidationError("invalid email format")
        if not req.password:
            raise ValidationError("password is required")
        if len(req.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        if not req.client_id:
            raise ValidationError("client ID is required")
        return username, email

    # operations
    def _register_user(self, req: RegisterUserRequest) -> RegisterUserResult:
        username, email = self._validate_registration(req)
        if not self.store.client_exists(req.client_id):
            raise InvalidClientError()
        if self.store.email_exists(email, req.client_id):
            raise AlreadyExistsError()
        user = User.new(
            username=username,
            email=normalize_email(email),
            password_hash=self.hasher.hash(req.password),
            client_id=req.client_id,
        )
        try:
            self.store.create_user(user)
        except ConstraintViolation:
            # Lost a race with a concurrent registration of the same email
            raise AlreadyExistsError() from None
        self.logger.info("user_registered", user_id=user.id, client_id=user.client_id)
        return RegisterUserResult(
            success=True, message="User registered successfully", user_id=user.id
        )

    async def register_user(self, req: RegisterUserRequest) -> RegisterUserResult:
        return await self._run("register_user", RegisterUserResult, self._register_user, req)

    def _login(self, req: LoginRequest) -> LoginResult:
        email = (req.email or "").strip()
        if not email or not req.password or not req.client_id:
            raise ValidationError("Email, password, and client ID are required")
        if not self.store.client_exists(req.client_id):
            raise InvalidClientError()
        user = self.store.get_user_by_email(email, req.client_id)
        if user is None or user.client_id != req.client_id:
            self._burn_password_check(req.password)
            raise InvalidCredentialsError()
        if not self.hasher.verify(req.password, user.password_hash):
            raise InvalidCredentialsError()
        if self.hasher.needs_rehash(user.password_hash):
            self._upgrade_password_hash(user, req.password)

        refresh_value = self._new_refresh_value()
        access_token, access_expires_at = self.codec.issue(
            user.id, user.username, req.client_id, refresh_value
        )
        user_agent = req.user_agent[:MAX_USER_AGENT_LENGTH] if req.user_agent else None
        session = Session.new(
            user_id=user.id,
            client_id=req.client_id,
            refresh_token=refresh_value,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=user_agent,
        )
        # Single active session per (user, client); a prior login is replaced
        session = self.store.upsert_session(session)
        self.logger.info("user_logged_in", user_id=user.id, client_id=req.client_id)
        return LoginResult(
            success=True,
            message="Login successful",
            access_token=access_token,
            refresh_token=refresh_value,
            expires_at=access_expires_at,
            refresh_expires_at=session.expires_at,
            user=UserProfile.from_user(user),
        )

    def _upgrade_password_hash(self, user: User, password: str) -> None:
        try:
            self.store.update_user(
                replace(user, password_hash=self.hasher.hash(password))
            )
            self.logger.info("password_hash_upgraded", user_id=user.id)
        except Exception as exc:
            self.logger.warning(
                "password_hash_upgrade_failed", user_id=user.id, error=str(exc)
            )

    async def login(self, req: LoginRequest) -> LoginResult:
        return await self._run("login", LoginResult, self._login, req)

    def _validate_token(self, req: ValidateTokenRequest) -> ValidateTokenResult:
        if not req.access_token:
            raise ValidationError("Access token is required")
        claims, user = self._authenticate(req.access_token)
        return ValidateTokenResult(
            valid=True,
            message="Token is valid",
            user_id=user.id,
            expires_at=claims.expires_at,
            user=UserProfile.from_user(user),
        )

    async def validate_token(self, req: ValidateTokenRequest) -> ValidateTokenResult:
        return await self._run("validate_token", ValidateTokenResult, self._validate_token, req)

    def _refresh_token(self, req: RefreshTokenRequest) -> RefreshTokenResult:
        if not req.refresh_token or not req.client_id:
            raise ValidationError("Refresh token and client ID are required")
        session = self.store.get_session_by_refresh_token(req.refresh_token)
        if session is None:
            raise InvalidRefreshTokenError()
        if session.client_id != req.client_id:
            self.logger.warning(
                "refresh_client_mismatch",
                user_id=session.user_id,
                client_id=req.client_id,
            )
            raise InvalidClientError()
        user = self.store.get_user(session.user_id)
        if user is None:
            raise InvalidRefreshTokenError()

        new_refresh_value = self._new_refresh_value()
        access_token, access_expires_at = self.codec.issue(
            user.id, user.username, session.client_id, new_refresh_value
        )
        rotated = self.store.rotate_session(
            req.refresh_token, new_refresh_value, self._refresh_expiry()
        )
        if rotated is None:
            # Another refresh or a logout consumed the value first
            self.logger.warning("refresh_rotation_conflict", user_id=user.id)
            raise InvalidRefreshTokenError()
        self.logger.info("refresh_token_rotated", user_id=user.id, client_id=session.client_id)
        return RefreshTokenResult(
            success=True,
            message="Token refreshed successfully",
            access_token=access_token,
            refresh_token=new_refresh_value,
            expires_at=access_expires_at,
            refresh_expires_at=rotated.expires_at,
        )

    async def refresh_token(self, req: RefreshTokenRequest) -> RefreshTokenResult:
        return await self._run("refresh_token", RefreshTokenResult, self._refresh_token, req)

    def _logout(self, req: LogoutRequest) -> LogoutResult:
        if not req.refresh_token:
            raise ValidationError("Refresh token is required")
        if not self.store.delete_session_by_refresh_token(req.refresh_token):
            raise InvalidRefreshTokenError()
        self.logger.info("user_logged_out")
        return LogoutResult(success=True, message="Logged out successfully")

    async def logout(self, req: LogoutRequest) -> LogoutResult:
        return await self._run("logout", LogoutResult, self._logout, req)

    def _change_password(self, req: ChangePasswordRequest) -> ChangePasswordResult:
        if not req.access_token or not req.current_password or not req.new_password:
            raise ValidationError(
                "Access token, current password, and new password are required"
            )
        if len(req.new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters long"
            )
        _, user = self._authenticate(req.access_token, require_session=False)
        if not self.hasher.verify(req.current_password, user.password_hash):
            raise InvalidCredentialsError("Current password is incorrect")

        updated = self.store.update_user(
            replace(user, password_hash=self.hasher.hash(req.new_password))
        )
        if updated is None:
            raise NotFoundError()
        try:
            revoked = self.store.delete_user_sessions(user.id)
        except Exception as exc:
            self.logger.exception("password_change_session_purge_failed", user_id=user.id)
            raise InternalError(
                "Password changed but failed to invalidate sessions"
            ) from exc
        self.logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return ChangePasswordResult(
            success=True,
            message="Password changed successfully. Please log in again.",
        )

    async def change_password(self, req: ChangePasswordRequest) -> ChangePasswordResult:
        return await self._run(
            "change_password", ChangePasswordResult, self._change_password, req
        )

    def _get_user_profile(self, req: GetUserProfileRequest) -> UserProfileResult:
        if not req.access_token:
            raise ValidationError("Access token is required")
        _, user = self._authenticate(req.access_token)
        return UserProfileResult(
            success=True,
            message="User profile retrieved successfully",
            user=UserProfile.from_user(user),
        )

    async def get_user_profile(self, req: GetUserProfileRequest) -> UserProfileResult:
        return await self._run(
            "get_user_profile", UserProfileResult, self._get_user_profile, req
        )

    def _register_client(self, req: RegisterClientRequest) -> RegisterClientResult:
        name = (req.name or "").strip()
        if not name:
            raise ValidationError("Client name is required")
        if len(name) > MAX_CLIENT_NAME_LENGTH:
            raise ValidationError(
                f"client name must be at most {MAX_CLIENT_NAME_LENGTH} characters long"
            )
        client_secret = secrets.token_urlsafe(CLIENT_SECRET_BYTES)
        client = Client.new(name=name, secret_hash=self.hasher.hash(client_secret))
        self.store.create_client(client)
        self.logger.info("client_registered", client_id=client.id, name=name)
        return RegisterClientResult(
            success=True,
            message="Client registered successfully",
            client_id=client.id,
            client_secret=client_secret,
        )

    async def register_client(self, req: RegisterClientRequest) -> RegisterClientResult:
        return await self._run(
            "register_client", RegisterClientResult, self._register_client, req
        )

    def _verify_client(self, client_id: str, client_secret: str) -> bool:
        if not client_id or not client_secret:
            return False
        try:
            with operation_deadline(self.settings.store_timeout_seconds):
                client = self.store.get_client(client_id)
        except Exception as exc:
            self.logger.warning(
                "client_verification_failed", client_id=client_id, error=str(exc)
            )
            return False
        if client is None:
            self._burn_password_check(client_secret)
            return False
        return self.hasher.verify(client_secret, client.secret_hash)

    async def verify_client(self, client_id: str, client_secret: str) -> bool:
        """Authenticate a client application by id and secret; fails closed."""
        return await asyncio.to_thread(self._verify_client, client_id, client_secret)

    def _health_check(self) -> HealthCheckResult:
        try:
            with operation_deadline(self.settings.store_timeout_seconds):
                store_ok = bool(self.store.ping())
            store_error = None
        except Exception as exc:
            store_ok = False
            store_error = type(exc).__name__
            self.logger.warning("health_check_store_unreachable", error=str(exc))
        details: dict[str, Any] = {
            "store": "ok" if store_ok else "unavailable",
            "store_backend": type(self.store).__name__,
            "timestamp": utcnow().isoformat(),
        }
        if store_error:
            details["store_error"] = store_error
        return HealthCheckResult(
            status="serving" if store_ok else "not_serving",
            version=__version__,
            details=details,
        )

    async def health_check(self) -> HealthCheckResult:
        return await asyncio.to_thread(self._health_check)
