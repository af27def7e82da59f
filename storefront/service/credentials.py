from __future__ import annotations

from typing import Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from storefront.logging import get_logger

logger = get_logger(__name__)


class CredentialStore:
    """argon2id hashing plus the password history ring buffer.

    Plaintext passwords only ever pass through ``hash``/``verify``; nothing
    here persists or logs them.
    """

    def __init__(
        self,
        *,
        history_size: int = 5,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.history_size = history_size
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, hashed: Optional[str]) -> bool:
        if not hashed or password is None:
            return False
        try:
            return self._hasher.verify(hashed, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def history_contains(self, password: str, history: Iterable[str]) -> bool:
        return any(self.verify(password, entry) for entry in history)

    def rotate(self, current_hash: Optional[str], history: Iterable[str]) -> List[str]:
        """Push the outgoing hash to the front of history and drop the oldest."""
        updated = list(history)
        if current_hash:
            updated.insert(0, current_hash)
        return updated[: self.history_size]
