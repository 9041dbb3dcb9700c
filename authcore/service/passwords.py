from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authcore.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_LENGTH = 128

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SYMBOL = re.compile(r"[^A-Za-z0-9\s]")


@dataclass
class PasswordStrength:
    valid: bool
    score: int
    unmet: List[str] = field(default_factory=list)


class CredentialHasher:
    """argon2id hashing for passwords and rotation-credential fingerprints.

    Digests are self-describing PHC strings (``$argon2id$v=19$m=...,t=...,p=...$salt$hash``)
    so the salt and work factor never need separate storage.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.max_length = max_length
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_digest: Optional[str] = None

    @classmethod
    def from_settings(
        cls, settings, *, max_length: Optional[int] = None
    ) -> "CredentialHasher":
        """Password hasher by default; pass ``max_length`` for token fingerprints."""
        return cls(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            max_length=max_length or settings.password_max_length,
        )

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("cannot hash an empty value")
        # Bound the input before doing any expensive work
        if len(plaintext) > self.max_length:
            raise ValueError(f"value exceeds {self.max_length} characters")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """Constant-time check; returns False instead of raising on bad input."""
        if not plaintext or not digest:
            return False
        if len(plaintext) > self.max_length:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("credential_digest_invalid")
            return False

    def burn(self, plaintext: str) -> bool:
        """Spend one verification's worth of work and return False.

        Used when there is no stored digest to check against, so that the
        caller's latency does not reveal that fact.
        """
        if self._dummy_digest is None:
            self._dummy_digest = self._hasher.hash("authcore-timing-equalizer")
        self.verify(plaintext or "x", self._dummy_digest)
        return False

    def strength(self, plaintext: str) -> "PasswordStrength":
        return password_strength(plaintext)


def password_strength(plaintext: str) -> PasswordStrength:
    """Advisory scoring; ``valid`` needs length >= 8 and 3 of 4 character classes."""
    plaintext = plaintext or ""
    unmet: list[str] = []
    score = 0

    if len(plaintext) < 8:
        unmet.append("at least 8 characters")
    elif len(plaintext) >= 12:
        score += 1

    classes = [
        (_LOWER, "a lowercase letter"),
        (_UPPER, "an uppercase letter"),
        (_DIGIT, "a digit"),
        (_SYMBOL, "a symbol such as !@#$%"),
    ]
    present = 0
    for pattern, label in classes:
        if pattern.search(plaintext):
            present += 1
            score += 1
        else:
            unmet.append(label)

    return PasswordStrength(
        valid=len(plaintext) >= 8 and present >= 3,
        score=min(score, 4),
        unmet=unmet,
    )
