"""Symmetric encryption for token values kept in the token store."""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken


class TokenCipherService:
    """Encrypt and decrypt token strings using a Fernet key derived from a secret.

    Ciphertexts carry a ``fernet:`` marker so rows written before encryption
    was enabled can still be read back as plaintext.
    """

    PREFIX = "fernet:"

    def __init__(self, *, secret: str) -> None:
        if not secret:
            raise ValueError("Token encryption secret must be provided.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return self.PREFIX + token.decode("utf-8")

    def decrypt(self, stored: str) -> str:
        """Return the plaintext for ``stored``, passing legacy plaintext through."""
        if not self.is_encrypted(stored):
            return stored
        ciphertext = stored[len(self.PREFIX):]
        try:
            plaintext = self._fernet.decrypt(ciphertext.encode("utf-8"))
        except InvalidToken as exc:
            raise ValueError(
                "Failed to decrypt token; invalid ciphertext provided."
            ) from exc
        return plaintext.decode("utf-8")

    @classmethod
    def is_encrypted(cls, stored: str) -> bool:
        return stored.startswith(cls.PREFIX)


__all__ = ["TokenCipherService"]
