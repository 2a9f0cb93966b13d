from __future__ import annotations

import unicodedata
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""

    cleaned = "".join(c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES)
    return unicodedata.normalize("NFKC", cleaned)


def canonical_email(value: str) -> str:
    """The stored form of an email address; lookups must use it too."""

    return normalize_unicode(value.strip().lower())


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    totp_secret: Optional[str] = None
    totp_pending_secret: Optional[str] = None
    totp_enabled: bool = False
    is_admin: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def public_view(self) -> dict:
        """Fields safe to hand to clients: no hash, no TOTP material."""

        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "is_admin": self.is_admin,
            "totp_enabled": self.totp_enabled,
            "created_at": self.created_at,
        }


@dataclass
class Session:
    """One refresh-token ledger row; a user has one per signed-in device."""

    id: str
    user_id: str
    device_id: str
    refresh_token: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        device_id: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
            created_at=_utcnow(),
        )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now
