from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and refresh tokens.

    Refresh tokens are long JWTs, so a bcrypt-style 72 byte truncation would
    make every token sharing a header collide; argon2 hashes the whole input.
    Hashing is CPU bound, so the async variants run in a worker thread.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost_kib,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: Optional[str], secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("stored_hash_invalid")
            return False

    async def hash_async(self, secret: str) -> str:
        return await asyncio.to_thread(self.hash, secret)

    async def verify_async(self, stored_hash: Optional[str], secret: str) -> bool:
        return await asyncio.to_thread(self.verify, stored_hash, secret)
