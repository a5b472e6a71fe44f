from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
import secrets
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.config import Settings
from authkernel.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARS = re.compile(r"[^A-Za-z0-9]")


def validate_password_strength(password: str) -> List[str]:
    """Return the list of policy violations for ``password`` (empty when valid)."""

    issues: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        issues.append(f"must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        issues.append(f"must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(c.isupper() for c in password):
        issues.append("must contain an uppercase letter")
    if not any(c.islower() for c in password):
        issues.append("must contain a lowercase letter")
    if not any(c.isdigit() for c in password):
        issues.append("must contain a digit")
    if not _SPECIAL_CHARS.search(password):
        issues.append("must contain a special character")
    return issues


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_token(raw: str) -> str:
    """Deterministic one-way hash for high-entropy tokens (indexed lookups)."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def constant_time_compare(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


class PasswordService:
    """argon2id hashing with configurable, bounded cost.

    Hashing runs in a worker thread so an expensive hash never stalls the
    event loop for concurrent requests.
    """

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash(generate_token(16))

    async def hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def verify_password(self, password_hash: str, password: str) -> bool:
        return await asyncio.to_thread(self._verify, password_hash, password)

    async def verify_dummy(self, password: str) -> None:
        """Spend one verification on a throwaway hash for unknown accounts."""
        await asyncio.to_thread(self._verify, self._dummy_hash, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True

    def _verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=type(exc).__name__)
            return False
