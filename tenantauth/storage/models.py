from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Client:
    id: str
    name: str
    secret_hash: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, name: str, secret_hash: str) -> "Client":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            secret_hash=secret_hash,
            created_at=now,
            updated_at=now,
        )


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    client_id: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, username: str, email: str, password_hash: str, client_id: str
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            client_id=client_id,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Session:
    """Live refresh credential for one (user, client) pair."""

    user_id: str
    client_id: str
    refresh_token: str
    expires_at: datetime
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        client_id: str,
        refresh_token: str,
        ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            user_id=user_id,
            client_id=client_id,
            refresh_token=refresh_token,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
