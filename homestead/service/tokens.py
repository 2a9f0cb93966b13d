from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from homestead.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access and refresh tokens signed with separate keys.

    Every verification failure collapses to ``None``; callers cannot tell a
    bad signature from an expired token.
    """

    def __init__(
        self,
        access_key: str,
        refresh_key: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ) -> None:
        if not access_key or not refresh_key:
            raise ValueError("signing keys are required")
        self._keys = {
            ACCESS_TOKEN_TYPE: access_key.encode(),
            REFRESH_TOKEN_TYPE: refresh_key.encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_access(self, user_id: str) -> IssuedToken:
        return self._issue(user_id, ACCESS_TOKEN_TYPE, self.access_ttl)

    def issue_refresh(self, user_id: str) -> IssuedToken:
        return self._issue(user_id, REFRESH_TOKEN_TYPE, self.refresh_ttl)

    def issue_pair(self, user_id: str) -> TokenPair:
        access = self.issue_access(user_id)
        refresh = self.issue_refresh(user_id)
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            refresh_expires_at=refresh.expires_at,
        )

    def verify_access(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        return self._verify(token, ACCESS_TOKEN_TYPE)

    def verify_refresh(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        return self._verify(token, REFRESH_TOKEN_TYPE)

    def _issue(self, user_id: str, token_type: str, ttl: timedelta) -> IssuedToken:
        now = datetime.now(timezone.utc)
        expires_at = now + ttl
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "token_type": token_type,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self._encode(payload, self._keys[token_type]),
            token_id=token_id,
            expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
        )

    def _sign(self, signing_input: str, key: bytes) -> str:
        return _encode_segment(
            hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any], key: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _verify(self, token: Optional[str], token_type: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", token_type=token_type)
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._keys[token_type])
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("token_type") != token_type:
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        # No leeway: a token is dead the second its exp passes
        if exp <= time.time():
            return None
        return payload
