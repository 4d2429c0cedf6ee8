from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from chatbridge.logging import get_logger

logger = get_logger(__name__)


class DecryptionError(Exception):
    """Ciphertext was not produced by this key or was tampered with."""


class EncryptionUtility:
    """Symmetric encryption shared by the token minter and the secondary store.

    Keys are derived from arbitrary secret material so operators can reuse
    an existing secret instead of generating a Fernet key by hand.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("encryption key material is required")
        self._cipher = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as exc:
            logger.warning("decrypt_failed")
            raise DecryptionError("ciphertext could not be decrypted") from exc
