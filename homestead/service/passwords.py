from __future__ import annotations

import string
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from homestead.logging import get_logger

logger = get_logger(__name__)

PASSWORD_SYMBOLS = '!@#$%^&*(),.?":{}|<>'


@dataclass(frozen=True)
class PasswordCheck:
    ok: bool
    reason: Optional[str] = None


def validate_password_strength(password: Optional[str], min_length: int = 24) -> PasswordCheck:
    """Check ``password`` against the policy, reporting the first failing rule."""

    if not password or not isinstance(password, str):
        return PasswordCheck(False, "password is required")
    if len(password) < min_length:
        return PasswordCheck(
            False, f"password must be at least {min_length} characters long"
        )
    if not any(ch in string.digits for ch in password):
        return PasswordCheck(False, "password must contain at least one number")
    if not any(ch in string.ascii_letters for ch in password):
        return PasswordCheck(False, "password must contain at least one letter")
    if not any(ch in PASSWORD_SYMBOLS for ch in password):
        return PasswordCheck(
            False, "password must contain at least one special character"
        )
    return PasswordCheck(True)


class PasswordHasher:
    """argon2id hashing with a configurable work factor."""

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            return False
