import asyncio
import base64
import hashlib
import logging

import bcrypt

logger = logging.getLogger(__name__)


class PasswordHasher:
    """
    Slow, salted password hashing with bcrypt.

    bcrypt only considers the first 72 bytes of its input, so passwords are first reduced to a base64-encoded
    SHA-256 digest (44 bytes). The cost factor is configurable; hashing and verification run in a worker thread to
    keep the event loop responsive.
    """

    def __init__(self, rounds: int = 12):
        if not 4 <= rounds <= 31:
            raise ValueError("bcrypt rounds must be between 4 and 31")
        self.rounds = rounds

    @staticmethod
    def _prehash(password: str) -> bytes:
        return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())

    def hash_sync(self, password: str) -> str:
        return bcrypt.hashpw(
            self._prehash(password), bcrypt.gensalt(rounds=self.rounds)
        ).decode("utf-8")

    def verify_sync(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(self._prehash(password), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("unreadable password hash")
            return False

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hash_sync, password)

    async def verify(self, password: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.verify_sync, password, password_hash)


def digest_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key for opaque session and verification tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
