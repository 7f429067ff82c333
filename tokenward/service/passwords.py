from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, opaque: str) -> bool: ...

    def verify_dummy(self, plaintext: str) -> bool: ...

    def needs_rehash(self, opaque: str) -> bool: ...


class Argon2PasswordHasher:
    """Argon2id hashing with a configurable work factor."""

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Decoy hash with the same parameters; comparing against it costs about
        # as much as a real verification.
        self._dummy_hash = self._hasher.hash("tokenward-dummy-password")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, opaque: str) -> bool:
        try:
            return self._hasher.verify(opaque, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error_type=type(exc).__name__)
            return False

    def verify_dummy(self, plaintext: str) -> bool:
        """Burn one verification for callers with no real hash to compare."""
        self.verify(plaintext, self._dummy_hash)
        return False

    def needs_rehash(self, opaque: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(opaque)
        except InvalidHash:
            return True


__all__ = ["PasswordHasher", "Argon2PasswordHasher"]
