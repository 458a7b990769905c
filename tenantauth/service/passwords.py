from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing; encoded hashes carry their own salt and cost."""

    algo = "argon2id"

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._pwd_hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("password must not be empty")
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, hash_value: str) -> bool:
        """Constant-time check; any failure reads as a mismatch."""
        if not plaintext or not hash_value:
            return False
        try:
            return self._pwd_hasher.verify(hash_value, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, hash_value: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(hash_value)
        except InvalidHash:
            return True
