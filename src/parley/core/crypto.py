# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Parley Contributors

"""Encryption at rest for message bodies.

AES-256-GCM under a single process-wide key, derived with HKDF-SHA256 from
the configured secret. Every encryption draws a fresh 96-bit IV, so the same
plaintext (or successive edits of one message) never share an IV.

Decryption never raises: it returns a ``DecryptResult`` which is either
``Decrypted`` or ``Corrupted``. Callers that only need display text use
``result.text``, which falls back to ``DECRYPTION_FAILED_PLACEHOLDER``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32
IV_SIZE = 12
DECRYPTION_FAILED_PLACEHOLDER = "[Decryption failed]"

# Used only when PARLEY_ENCRYPTION_KEY is unset
DEVELOPMENT_SECRET = "parley-development-key"
_HKDF_INFO = b"parley-message-encryption"


@dataclass(frozen=True)
class Decrypted:
    plaintext: str

    @property
    def ok(self) -> bool:
        return True

    @property
    def text(self) -> str:
        return self.plaintext


@dataclass(frozen=True)
class Corrupted:
    reason: str

    @property
    def ok(self) -> bool:
        return False

    @property
    def text(self) -> str:
        return DECRYPTION_FAILED_PLACEHOLDER


DecryptResult = Decrypted | Corrupted


def derive_key(secret: str | bytes) -> bytes:
    """Derive the 256-bit content key from a configured secret."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=None,
        info=_HKDF_INFO,
    ).derive(secret)


class CryptoCodec:
    """Stateless encrypt/decrypt of message bodies under one key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_SIZE:
            raise ValueError(f"Content key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str | None) -> CryptoCodec:
        if not secret:
            logger.warning("PARLEY_ENCRYPTION_KEY is not set; using the development key")
            secret = DEVELOPMENT_SECRET
        return cls(derive_key(secret))

    def encrypt(self, plaintext: str) -> tuple[str, str]:
        """Encrypt a message body.

        Returns:
            (ciphertext, iv), both hex encoded.
        """
        iv = os.urandom(IV_SIZE)
        ciphertext = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return ciphertext.hex(), iv.hex()

    def decrypt(self, ciphertext: str, iv: str) -> DecryptResult:
        try:
            nonce = bytes.fromhex(iv)
            data = bytes.fromhex(ciphertext)
        except (TypeError, ValueError):
            logger.warning("Malformed ciphertext or IV encoding")
            return Corrupted("malformed encoding")

        if len(nonce) != IV_SIZE:
            logger.warning("Unexpected IV length %d", len(nonce))
            return Corrupted("bad iv length")

        try:
            plaintext = self._aesgcm.decrypt(nonce, data, None)
        except InvalidTag:
            logger.warning("Message failed authentication (corrupted or wrong key)")
            return Corrupted("authentication failed")

        try:
            return Decrypted(plaintext.decode("utf-8"))
        except UnicodeDecodeError:
            logger.warning("Decrypted body is not valid UTF-8")
            return Corrupted("invalid utf-8")
