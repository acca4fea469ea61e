"""
Reversible encryption for tenant remote-server credentials.

Values are sealed with AES-256-GCM and stored as ``iv:authTag:ciphertext``
(hex). The key is injected by the caller; nothing here reads the environment.
"""

from __future__ import annotations

import binascii
import os
from typing import Any, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from audience_app.errors import CredentialError

IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
KEY_LENGTH = 32


def derive_key(secret: str | bytes) -> bytes:
    """Truncate or right-pad ``secret`` with ``'0'`` to exactly 32 bytes."""

    raw = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    return raw[:KEY_LENGTH].ljust(KEY_LENGTH, b"0")


class CredentialVault:
    def __init__(self, secret: str | bytes) -> None:
        if not secret:
            raise CredentialError("Credential encryption key is not configured")
        self._cipher = AESGCM(derive_key(secret))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "CredentialVault":
        return cls(config.get("CREDENTIAL_ENCRYPTION_KEY") or "")

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._cipher.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        parts = (token or "").split(":")
        if len(parts) != 3:
            raise CredentialError("Invalid encrypted data format")
        try:
            iv, tag, ciphertext = (binascii.unhexlify(part) for part in parts)
        except (binascii.Error, ValueError) as exc:
            raise CredentialError("Invalid encrypted data format") from exc
        if len(iv) != IV_LENGTH:
            raise CredentialError("Invalid IV length")
        if len(tag) != AUTH_TAG_LENGTH:
            raise CredentialError("Invalid auth tag length")
        try:
            plaintext = self._cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise CredentialError("Encrypted credential failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CredentialError("Decrypted credential is not valid UTF-8") from exc
