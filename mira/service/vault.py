from __future__ import annotations

import base64
import binascii
import hashlib
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_BYTES = 12
_DELIMITER = ":"


class DecryptionError(Exception):
    """Stored credential blob cannot be decrypted into usable plaintext."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode()


def _b64decode(text: str) -> bytes:
    try:
        return base64.urlsafe_b64decode(text.encode())
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("credential blob is not valid base64") from exc


def join_blob(nonce: str, ciphertext: str) -> str:
    return f"{nonce}{_DELIMITER}{ciphertext}"


def split_blob(blob: str) -> tuple[str, str]:
    """Return ``(nonce, ciphertext)`` parts of a blob without decrypting it."""
    if not isinstance(blob, str) or _DELIMITER not in blob:
        raise DecryptionError("credential blob is missing its delimiter")
    nonce, ciphertext = blob.split(_DELIMITER, 1)
    if not nonce or not ciphertext:
        raise DecryptionError("credential blob has an empty part")
    return nonce, ciphertext


class CredentialVault:
    """AES-GCM encryption for per-user provider keys at rest.

    Each record gets its own random nonce, stored next to the ciphertext. The
    key is derived once from process configuration; changing it makes every
    stored record undecryptable, and users recover by saving their keys again.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("credential encryption key material is required")
        self._aead = AESGCM(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return hashlib.sha256(key_material.encode()).digest()

    @classmethod
    def ephemeral(cls) -> "CredentialVault":
        """Vault with a random per-process key; records do not survive a restart."""
        return cls(secrets.token_urlsafe(48))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("cannot encrypt an empty secret")
        nonce = os.urandom(NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode(), None)
        return join_blob(_b64encode(nonce), _b64encode(ciphertext))

    def decrypt(self, blob: str) -> str:
        nonce_text, ciphertext_text = split_blob(blob)
        nonce = _b64decode(nonce_text)
        if len(nonce) != NONCE_BYTES:
            raise DecryptionError("credential nonce has the wrong length")
        ciphertext = _b64decode(ciphertext_text)
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise DecryptionError("credential failed authentication") from exc
        try:
            return plaintext.decode()
        except UnicodeDecodeError as exc:
            raise DecryptionError("credential plaintext is not valid text") from exc
