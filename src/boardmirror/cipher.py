"""
Symmetric text encryption for cached column values.

AES-256-CBC with PKCS7 padding. Every call draws a fresh IV, so two
encryptions of the same text never look alike. The IV travels with the
ciphertext in a small JSON envelope:

    {"iv": "<32 hex chars>", "ct": "<hex ciphertext>"}
"""

from __future__ import annotations

import json
import os
import re
import secrets
from typing import Union

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher as _AESCipher
from cryptography.hazmat.primitives.ciphers import algorithms, modes

from .errors import DecryptionError, InvalidKeyError


KEY_LENGTH = 32
IV_LENGTH = 16
_HEX_KEY = re.compile(rf"^[0-9a-fA-F]{{{KEY_LENGTH * 2}}}$")


def generate_key() -> str:
    """Generate a new random key, hex encoded."""
    return secrets.token_hex(KEY_LENGTH)


class Cipher:
    """Encrypts and decrypts strings under one fixed key.

    Args:
        key: 32 raw bytes, or the same 32 bytes as 64 hex characters.

    Raises:
        InvalidKeyError: If the key has any other shape.
    """

    def __init__(self, key: Union[str, bytes]) -> None:
        if isinstance(key, str) and _HEX_KEY.match(key):
            self._key = bytes.fromhex(key)
        elif isinstance(key, bytes) and len(key) == KEY_LENGTH:
            self._key = key
        else:
            # never echo key material
            raise InvalidKeyError(
                f"Invalid encryption key: expected {KEY_LENGTH} bytes "
                f"or {KEY_LENGTH * 2} hex characters"
            )

    def encrypt(self, text: str) -> str:
        """Encrypt a string.

        Args:
            text: Clear text.

        Returns:
            JSON envelope holding the IV and ciphertext.
        """
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(text.encode("utf-8")) + padder.finalize()

        encryptor = _AESCipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ct = encryptor.update(padded) + encryptor.finalize()
        return json.dumps({"iv": iv.hex(), "ct": ct.hex()})

    def decrypt(self, encoded: str) -> str:
        """Decrypt a string produced by encrypt().

        Args:
            encoded: JSON envelope from encrypt().

        Returns:
            The original clear text.

        Raises:
            DecryptionError: If the envelope or ciphertext is malformed.
        """
        try:
            envelope = json.loads(encoded)
            iv = bytes.fromhex(envelope["iv"])
            ct = bytes.fromhex(envelope["ct"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise DecryptionError(f"Malformed ciphertext envelope: {exc}") from exc

        if len(iv) != IV_LENGTH:
            raise DecryptionError(f"Bad IV length: {len(iv)}")

        try:
            decryptor = _AESCipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ct) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecryptionError(f"Decryption failed: {exc}") from exc
