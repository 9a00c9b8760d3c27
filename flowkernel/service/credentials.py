from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class CredentialError(Exception):
    """A stored provider credential could not be decrypted."""


class CredentialCipher:
    """Fernet encryption for provider API keys at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("credential cipher needs key material")
        self._fernet = Fernet(self._derive_cipher_key(key_material))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialError("stored credential cannot be decrypted") from exc
