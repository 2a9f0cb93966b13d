from __future__ import annotations

import base64
import hashlib
import hmac
import io
import os
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlencode

import qrcode

from homestead.logging import get_logger

logger = get_logger(__name__)

TOTP_PERIOD_SECONDS = 30
TOTP_DIGITS = 6
# Accept codes up to two steps either side of now (about 60s of clock drift)
TOTP_WINDOW_STEPS = 2
_SECRET_BYTES = 20
_CODE_PATTERN = re.compile(r"^[0-9]{6}$")


@dataclass(frozen=True)
class TOTPEnrollment:
    secret: str
    otpauth_uri: str
    qr_code: str


def generate_secret() -> str:
    """160 random bits, base32 without padding."""

    return base64.b32encode(os.urandom(_SECRET_BYTES)).decode("ascii").rstrip("=")


def code_at(secret: str, timestamp: float) -> str:
    """RFC 6238 code (HMAC-SHA1, 30s steps, 6 digits) for ``timestamp``."""

    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    key = base64.b32decode(padded, casefold=True)
    counter = int(timestamp // TOTP_PERIOD_SECONDS).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**TOTP_DIGITS
    )
    return str(code_int).zfill(TOTP_DIGITS)


def is_well_formed_code(code: Optional[str]) -> bool:
    return isinstance(code, str) and bool(_CODE_PATTERN.fullmatch(code))


class TOTPEngine:
    """Enrollment material and time-window verification for authenticator apps."""

    def __init__(self, issuer: str = "Homestead") -> None:
        self.issuer = issuer

    def provisioning_uri(self, secret: str, username: str) -> str:
        label = quote(f"{self.issuer}:{username}", safe=":@")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_PERIOD_SECONDS,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def render_qr(uri: str) -> str:
        image = qrcode.make(uri)
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        return f"data:image/png;base64,{encoded}"

    def enroll(self, username: str) -> TOTPEnrollment:
        secret = generate_secret()
        uri = self.provisioning_uri(secret, username)
        return TOTPEnrollment(secret=secret, otpauth_uri=uri, qr_code=self.render_qr(uri))

    def verify(self, secret: Optional[str], code: Optional[str], *, at: Optional[float] = None) -> bool:
        if not is_well_formed_code(code) or not secret:
            return False
        now = time.time() if at is None else at
        try:
            candidates = [
                code_at(secret, now + step * TOTP_PERIOD_SECONDS)
                for step in range(-TOTP_WINDOW_STEPS, TOTP_WINDOW_STEPS + 1)
            ]
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return False
        matched = False
        for candidate in candidates:
            # Compare every step so timing does not reveal which one matched
            matched |= hmac.compare_digest(candidate, code)
        return matched
