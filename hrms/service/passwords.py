from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from hrms.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """Salted, slow one-way hashing of secrets (argon2id).

    ``cost`` is the argon2 time cost; every hash carries its own parameters,
    so hashes produced under an older cost still verify.
    """

    def __init__(self, cost: int = 3, *, memory_kib: int = 65536) -> None:
        if cost < 1:
            raise ValueError("cost must be >= 1")
        self.cost = cost
        self._hasher = PasswordHasher(time_cost=cost, memory_cost=memory_kib, type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
