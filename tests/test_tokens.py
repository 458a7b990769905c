"""Tests for the HS256 access token codec."""

import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.config import Settings
from tenantauth.service.tokens import (
    TokenCodec,
    TokenError,
    TokenExpired,
    TokenInvalid,
)


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _split(token: str):
    header, payload, signature = token.split(".")
    padding = "=" * ((4 - len(payload) % 4) % 4)
    return header, json.loads(base64.urlsafe_b64decode(payload + padding)), signature


class TestIssue:
    def test_issue_and_decode_round_trip(self, codec):
        token, expires_at = codec.issue("user-1", "alice", "c1", "refresh-abc")
        claims = codec.decode(token)

        assert claims.user_id == "user-1"
        assert claims.username == "alice"
        assert claims.client_id == "c1"
        assert claims.refresh_token == "refresh-abc"
        assert claims.expires_at == expires_at

    def test_expiry_follows_ttl(self, codec, settings):
        before = datetime.now(timezone.utc)
        _, expires_at = codec.issue("user-1", "alice", "c1", "refresh-abc")
        expected = before + timedelta(minutes=settings.access_token_ttl_minutes)
        assert abs((expires_at - expected).total_seconds()) <= 2

    def test_default_ttl_is_one_day(self):
        settings = Settings(jwt_secret="another-test-secret-value-123456")
        assert settings.access_token_ttl_minutes == 24 * 60

    def test_payload_carries_issuer_and_audience(self, codec, settings):
        token, _ = codec.issue("user-1", "alice", "c1", "refresh-abc")
        _, payload, _ = _split(token)
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["rt"] == "refresh-abc"
        assert isinstance(payload["iat"], int)


class TestDecodeFailures:
    def test_tampered_payload_is_invalid(self, codec):
        token, _ = codec.issue("user-1", "alice", "c1", "refresh-abc")
        header, payload, signature = _split(token)
        payload["sub"] = "user-2"
        forged = f"{header}.{_b64(payload)}.{signature}"

        with pytest.raises(TokenInvalid):
            codec.decode(forged)

    def test_other_secret_is_invalid(self, codec):
        other = TokenCodec(Settings(jwt_secret="a-completely-different-secret"))
        token, _ = other.issue("user-1", "alice", "c1", "refresh-abc")
        with pytest.raises(TokenInvalid):
            codec.decode(token)

    def test_alg_none_is_rejected(self, codec):
        token, _ = codec.issue("user-1", "alice", "c1", "refresh-abc")
        _, payload, _ = _split(token)
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."
        with pytest.raises(TokenInvalid):
            codec.decode(forged)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens(self, codec, token):
        with pytest.raises(TokenInvalid):
            codec.decode(token)

    def test_missing_claim_is_invalid(self, codec, settings):
        payload = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": "user-1",
            "client_id": "c1",
            "rt": "refresh-abc",
            "exp": int(time.time()) + 60,
        }
        token = codec._encode_jwt(payload)
        with pytest.raises(TokenInvalid):
            codec.decode(token)

    @pytest.mark.parametrize("segment", [0, 1, 2])
    def test_non_ascii_segment_is_invalid(self, codec, segment):
        token, _ = codec.issue("user-1", "alice", "c1", "refresh-abc")
        parts = token.split(".")
        parts[segment] = "é" + parts[segment][1:]

        with pytest.raises(TokenInvalid):
            codec.decode(".".join(parts))

    def test_wrong_audience_is_invalid(self, codec, settings):
        payload = {
            "iss": settings.jwt_issuer,
            "aud": "someone-else",
            "sub": "user-1",
            "username": "alice",
            "client_id": "c1",
            "rt": "refresh-abc",
            "exp": int(time.time()) + 60,
        }
        with pytest.raises(TokenInvalid):
            codec.decode(codec._encode_jwt(payload))

    def test_expired_token_is_distinguished(self, codec, settings):
        payload = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": "user-1",
            "username": "alice",
            "client_id": "c1",
            "rt": "refresh-abc",
            "exp": int(time.time()) - 5,
        }
        with pytest.raises(TokenExpired) as excinfo:
            codec.decode(codec._encode_jwt(payload))
        assert isinstance(excinfo.value, TokenError)
        assert not isinstance(excinfo.value, TokenInvalid)

    def test_leeway_accepts_recently_expired(self, settings):
        lenient = TokenCodec(settings.model_copy(update={"jwt_leeway_seconds": 60}))
        payload = {
            "iss": settings.jwt_issuer,
            "aud": settings.jwt_audience,
            "sub": "user-1",
            "username": "alice",
            "client_id": "c1",
            "rt": "refresh-abc",
            "exp": int(time.time()) - 5,
        }
        claims = lenient.decode(lenient._encode_jwt(payload))
        assert claims.user_id == "user-1"
