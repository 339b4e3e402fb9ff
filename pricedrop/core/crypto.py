"""Encryption of refresh credentials at rest.

Values are sealed with AES-256-GCM under the process-wide ``ENCRYPTION_KEY``
(64 hex characters). The stored format is::

    ENC:v1:<base64(nonce || ciphertext || tag)>

GCM is authenticated, so a ciphertext produced under a different key (or a
corrupted row) raises :class:`DecryptionFailedError` instead of returning
garbage.
"""

import base64
import binascii
import logging
import os
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from pricedrop.core.config import get_settings
from pricedrop.core.exceptions import CryptoConfigError, DecryptionFailedError

logger = logging.getLogger(__name__)

_PREFIX = "ENC:v1:"
_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32


class CredentialCipher:
    """Symmetric encrypt/decrypt bound to a single key."""

    def __init__(self, key_hex: str):
        if not key_hex:
            raise CryptoConfigError("ENCRYPTION_KEY is not set")
        try:
            key = bytes.fromhex(key_hex)
        except ValueError:
            raise CryptoConfigError("ENCRYPTION_KEY must be hex encoded")
        if len(key) != _KEY_SIZE:
            raise CryptoConfigError(
                f"ENCRYPTION_KEY must be {_KEY_SIZE * 2} hex characters, got {len(key_hex)}"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return _PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, value: Optional[str]) -> str:
        if not value or not value.startswith(_PREFIX):
            raise DecryptionFailedError("Stored credential is not in the ENC:v1 format")

        try:
            raw = base64.b64decode(value[len(_PREFIX):].encode("ascii"), validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionFailedError("Stored credential is not valid base64")

        if len(raw) <= _NONCE_SIZE:
            raise DecryptionFailedError("Stored credential is truncated")

        nonce, sealed = raw[:_NONCE_SIZE], raw[_NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, sealed, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            # Wrong key (rotation) or a corrupted row
            logger.warning("Credential decryption failed: authentication tag mismatch")
            raise DecryptionFailedError("Stored credential cannot be decrypted with the current key")


@lru_cache()
def get_cipher() -> CredentialCipher:
    """Process-wide cipher, built once from settings on first use"""
    return CredentialCipher(get_settings().ENCRYPTION_KEY)
