from __future__ import annotations

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from homestead.logging import get_logger

logger = get_logger(__name__)

_NONCE_BYTES = 12


class SecretDecryptError(ValueError):
    """Ciphertext is malformed or was sealed under a different key."""


class SecretCipher:
    """AES-256-GCM wrapper for small secrets stored at rest.

    Ciphertexts are ``"<nonce hex>:<ciphertext+tag hex>"`` so they survive
    text columns and the JSON-free memory store unchanged.
    """

    def __init__(self, encryption_key: str) -> None:
        if not encryption_key:
            raise ValueError("encryption key is required")
        self._aead = AESGCM(self._derive_key(encryption_key))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        # Generated keys are 64 hex chars (32 bytes); operator keys are hashed down
        if len(key_material) == 64:
            try:
                return bytes.fromhex(key_material)
            except ValueError:
                pass
        return hashlib.sha256(key_material.encode()).digest()

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{nonce.hex()}:{sealed.hex()}"

    def decrypt(self, token: str) -> str:
        try:
            nonce_hex, sealed_hex = token.split(":", 1)
            nonce = bytes.fromhex(nonce_hex)
            sealed = bytes.fromhex(sealed_hex)
        except ValueError as exc:
            raise SecretDecryptError("ciphertext is malformed") from exc
        if len(nonce) != _NONCE_BYTES:
            raise SecretDecryptError("ciphertext is malformed")
        try:
            return self._aead.decrypt(nonce, sealed, None).decode("utf-8")
        except InvalidTag as exc:
            logger.warning("secret_decrypt_failed")
            raise SecretDecryptError("ciphertext failed authentication") from exc
