"""Tests for password hashing."""

import pytest
from argon2 import PasswordHasher as Argon2Hasher

from tenantauth.service.passwords import PasswordHasher


@pytest.fixture
def hasher():
    return PasswordHasher()


class TestPasswordHashing:
    """Tests for hashing and verification."""

    def test_hash_is_not_plaintext(self, hasher):
        password = "TestPassword123!"
        digest = hasher.hash(password)

        assert digest != password
        assert digest.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, hasher):
        assert hasher.hash("TestPassword123!") != hasher.hash("TestPassword123!")

    def test_empty_password_rejected(self, hasher):
        with pytest.raises(ValueError):
            hasher.hash("")

    def test_verify_correct_and_wrong(self, hasher):
        digest = hasher.hash("TestPassword123!")
        assert hasher.verify("TestPassword123!", digest) is True
        assert hasher.verify("WrongPassword123!", digest) is False

    @pytest.mark.parametrize("stored", ["", "plaintext", "$argon2id$garbage", "$2b$12$abc"])
    def test_verify_fails_closed_on_malformed_hash(self, hasher, stored):
        assert hasher.verify("TestPassword123!", stored) is False

    def test_verify_empty_input(self, hasher):
        digest = hasher.hash("TestPassword123!")
        assert hasher.verify("", digest) is False


class TestRehash:
    def test_current_parameters_need_no_rehash(self, hasher):
        assert hasher.needs_rehash(hasher.hash("TestPassword123!")) is False

    def test_weaker_parameters_need_rehash(self, hasher):
        weak = Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1)
        assert hasher.needs_rehash(weak.hash("TestPassword123!")) is True

    def test_malformed_hash_needs_rehash(self, hasher):
        assert hasher.needs_rehash("not-a-hash") is True
