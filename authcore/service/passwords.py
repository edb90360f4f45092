from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordHasher:
    """argon2id hashing with a fixed work factor.

    The encoded hash carries its own salt and parameters, so verification
    needs nothing besides the stored string. Both calls are CPU bound and
    intentionally slow; async callers run them on a worker thread.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """True when the stored hash was produced with different parameters."""
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
