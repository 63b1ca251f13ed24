from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tasktrack.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Argon2id hash/verify behind the two-call contract the auth service uses."""

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("password must not be empty")
        return self._hasher.hash(password)

    def verify(self, credential_hash: str, password: str) -> bool:
        if not credential_hash or not password:
            return False
        try:
            return self._hasher.verify(credential_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False
