"""Tests for argon2id password hashing."""

import pytest

from authcore.service.passwords import PASSWORD_ALGO, PasswordHasher


@pytest.fixture
def hasher():
    # minimal work factor keeps the suite fast
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


class TestPasswordHasher:
    def test_hash_is_argon2id(self, hasher):
        encoded = hasher.hash("Correct-Horse1!")
        assert encoded.startswith(f"${PASSWORD_ALGO}$")
        assert "Correct-Horse1!" not in encoded

    def test_same_password_hashes_differently(self, hasher):
        assert hasher.hash("Correct-Horse1!") != hasher.hash("Correct-Horse1!")

    def test_verify_accepts_matching_password(self, hasher):
        encoded = hasher.hash("Correct-Horse1!")
        assert hasher.verify("Correct-Horse1!", encoded) is True

    def test_verify_rejects_wrong_password(self, hasher):
        encoded = hasher.hash("Correct-Horse1!")
        assert hasher.verify("Wrong-Horse1!", encoded) is False

    @pytest.mark.parametrize("stored", [None, "", "not-a-hash", "$argon2id$garbage"])
    def test_verify_rejects_missing_or_unreadable_hash(self, hasher, stored):
        assert hasher.verify("Correct-Horse1!", stored) is False

    def test_needs_rehash_after_parameter_change(self, hasher):
        encoded = hasher.hash("Correct-Horse1!")
        assert hasher.needs_rehash(encoded) is False
        stronger = PasswordHasher(time_cost=2, memory_cost=16, parallelism=1)
        assert stronger.needs_rehash(encoded) is True
