from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError

from xmatches.logging import get_logger
from xmatches.service.errors import ServerError

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12


class PasswordHasher:
    """argon2id hashing with the library's default cost parameters."""

    def __init__(self) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID)
        # Verified against on unknown-email logins so both paths cost one hash
        self._dummy_hash: str | None = None

    def hash(self, password: str) -> str:
        try:
            return self._hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise ServerError("hash failed") from exc

    def verify(self, password: str, digest: str) -> bool:
        """Return True when ``password`` matches ``digest``; never raises on mismatch."""
        try:
            return self._hasher.verify(digest, password)
        except (InvalidHash, VerificationError):
            return False

    def burn(self, password: str) -> None:
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("xmatches-dummy-password")
        self.verify(password, self._dummy_hash)
