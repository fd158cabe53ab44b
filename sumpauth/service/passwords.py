from __future__ import annotations

import asyncio
import secrets
import threading
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHashError, VerificationError

from sumpauth.config import Settings
from sumpauth.logging import get_logger
from sumpauth.service.errors import InternalError, InvalidInput, PasswordPolicyError

logger = get_logger(__name__)

# argon2 accepts arbitrarily long input; cap it so a request cannot buy CPU
MAX_PLAINTEXT_BYTES = 4096


class CredentialHasher:
    """argon2id hashing and constant-time verification.

    ``verify`` never raises: a wrong password, a corrupt hash and a missing
    hash are all just ``False``.
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
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    @staticmethod
    def _check_input(plaintext: str) -> None:
        if not plaintext:
            raise InvalidInput("password must not be empty")
        if len(plaintext.encode("utf-8")) > MAX_PLAINTEXT_BYTES:
            raise InvalidInput("password is too long")

    def hash(self, plaintext: str) -> str:
        self._check_input(plaintext)
        try:
            return self._hasher.hash(plaintext)
        except (HashingError, MemoryError) as exc:
            logger.error("password_hash_failed", error=type(exc).__name__)
            raise InternalError("password hashing failed") from exc

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool:
        # Rejected inputs still pay for one verification
        if (
            not password_hash
            or not plaintext
            or len(plaintext.encode("utf-8")) > MAX_PLAINTEXT_BYTES
        ):
            return self.verify_dummy(plaintext)
        try:
            return self._hasher.verify(password_hash, plaintext)
        except (VerificationError, InvalidHashError):
            return False

    def _get_dummy_hash(self) -> str:
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._hasher.hash(secrets.token_hex(16))
            return self._dummy_hash

    def verify_dummy(self, plaintext: str) -> bool:
        """Burn one verification so unknown accounts cost as much as known ones."""
        candidate = plaintext if plaintext else "x"
        if len(candidate.encode("utf-8")) > MAX_PLAINTEXT_BYTES:
            candidate = candidate[:MAX_PLAINTEXT_BYTES]
        try:
            self._hasher.verify(self._get_dummy_hash(), candidate)
        except (VerificationError, InvalidHashError):
            pass
        return False

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, plaintext: str, password_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, plaintext, password_hash)

    async def verify_dummy_async(self, plaintext: str) -> bool:
        return await asyncio.to_thread(self.verify_dummy, plaintext)


class PasswordPolicy:
    def __init__(self, *, min_length: int = 8, max_length: int = 72) -> None:
        self.min_length = min_length
        self.max_length = max_length

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            max_length=settings.password_max_length,
        )

    def validate(self, password: str) -> List[str]:
        """Return every rule the password breaks; empty means acceptable."""
        reasons: List[str] = []
        length = len(password or "")
        if length < self.min_length:
            reasons.append(f"Password must be at least {self.min_length} characters")
        if length > self.max_length:
            reasons.append(f"Password must be at most {self.max_length} characters")
        return reasons

    def enforce(self, password: str) -> None:
        reasons = self.validate(password)
        if reasons:
            raise PasswordPolicyError(reasons)
