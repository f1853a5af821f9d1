"""
Optional at-rest encryption for queued message content.

Encryption is disabled by default and becomes a pass-through.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mesh_config import SecurityConfig


ENC_PREFIX = "enc1:"
NONCE_LEN = 12


class QueueContentCipher:
    """
    Encrypts/decrypts queued content before it reaches SQLite.

    - If encryption disabled or no key -> passthrough.
    - Uses AES-GCM with 12-byte nonce; the message id is the associated data,
      so a ciphertext cannot be moved onto another row.
    """

    def __init__(self, config: SecurityConfig) -> None:
        self._aesgcm: Optional[AESGCM] = None

        if not config.enable_encryption:
            return

        if config.key is None:
            return

        self._aesgcm = AESGCM(config.key)

    @property
    def encryption_enabled(self) -> bool:
        return self._aesgcm is not None

    def encrypt_text(self, text: str, associated_data: bytes) -> str:
        if self._aesgcm is None:
            return text

        nonce = os.urandom(NONCE_LEN)
        ciphertext = self._aesgcm.encrypt(
            nonce=nonce,
            data=text.encode("utf-8"),
            associated_data=associated_data,
        )
        return ENC_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt_text(self, value: str, associated_data: bytes) -> str:
        """
        Returns plaintext. Values without the prefix are returned unchanged
        (rows written before encryption was switched on).

        Raises ValueError if the value is encrypted and cannot be opened.
        """
        if not value.startswith(ENC_PREFIX):
            return value
        if self._aesgcm is None:
            raise ValueError("encrypted queue content but no key configured")

        try:
            blob = base64.b64decode(value[len(ENC_PREFIX):].encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise ValueError("malformed encrypted queue content") from exc
        if len(blob) <= NONCE_LEN:
            raise ValueError("encrypted queue content too short")

        try:
            plaintext = self._aesgcm.decrypt(
                nonce=blob[:NONCE_LEN],
                data=blob[NONCE_LEN:],
                associated_data=associated_data,
            )
        except InvalidTag as exc:
            raise ValueError("queue content failed authentication") from exc
        return plaintext.decode("utf-8")
