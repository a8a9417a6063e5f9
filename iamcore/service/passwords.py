from __future__ import annotations

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from iamcore.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Salted argon2id hashing with a configurable work factor."""

    algorithm = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Burned on unknown accounts so lookups and mismatches cost the same
        self._dummy_digest = self._hasher.hash("iamcore-dummy-password")

    def hash(self, secret: str) -> str:
        if not secret:
            raise ValueError("cannot hash an empty secret")
        return self._hasher.hash(secret)

    def verify(self, secret: str, digest: str | None) -> bool:
        if not digest:
            self.burn(secret)
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_invalid", algorithm=self.algorithm)
            return False

    def burn(self, secret: str) -> None:
        """Spend one verification's worth of work without a real digest."""
        try:
            self._hasher.verify(self._dummy_digest, secret or "")
        except (VerifyMismatchError, VerificationError, InvalidHash):
            pass

    def needs_rehash(self, digest: str) -> bool:
        return self._hasher.check_needs_rehash(digest)
