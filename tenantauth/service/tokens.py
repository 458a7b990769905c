"""HS256 access credentials bound to a refresh value.

Tokens are compact JWTs signed with the process-wide ``JWT_SECRET``. Besides
identity claims every token carries ``rt``, the refresh value of the session
it was issued against, so rotating or revoking that session strands the
access token even before it expires.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Tuple

from tenantauth.config import Settings
from tenantauth.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Base class for access credential failures."""


class TokenInvalid(TokenError):
    """Malformed token, bad signature, wrong issuer/audience or missing claims."""


class TokenExpired(TokenError):
    """Signature verifies but ``exp`` has passed."""


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    username: str
    client_id: str
    refresh_token: str
    expires_at: datetime


_REQUIRED_STRING_CLAIMS = ("sub", "username", "client_id", "rt")


class TokenCodec:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._secret = settings.jwt_secret.encode()
        self._leeway = timedelta(seconds=settings.jwt_leeway_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self, user_id: str, username: str, client_id: str, refresh_value: str
    ) -> Tuple[str, datetime]:
        """Sign a credential valid for ``access_token_ttl_minutes`` from now."""
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "username": username,
            "client_id": client_id,
            "rt": refresh_value,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        # exp is whole seconds on the wire; report what the token says
        return self._encode_jwt(payload), datetime.fromtimestamp(payload["exp"], timezone.utc)

    def decode(self, token: str) -> AccessClaims:
        """Verify ``token`` and return its claims.

        Raises:
            TokenInvalid: structure, header, signature, issuer, audience or claim failure
            TokenExpired: everything verifies but the token is past ``exp``
        """
        if not token or not isinstance(token, str):
            raise TokenInvalid("empty token")
        # JWT segments are base64url; anything else cannot verify
        if not token.isascii():
            raise TokenInvalid("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        # Validate header algorithm to prevent algorithm confusion attacks
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("malformed header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed payload")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid("issuer mismatch")
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            raise TokenInvalid("audience mismatch")

        for claim in _REQUIRED_STRING_CLAIMS:
            value = payload.get(claim)
            if not isinstance(value, str) or not value:
                raise TokenInvalid(f"missing claim {claim}")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise TokenInvalid("missing claim exp")
        if exp <= time.time() - self._leeway.total_seconds():
            raise TokenExpired("token expired")

        return AccessClaims(
            user_id=payload["sub"],
            username=payload["username"],
            client_id=payload["client_id"],
            refresh_token=payload["rt"],
            expires_at=datetime.fromtimestamp(exp, timezone.utc),
        )
