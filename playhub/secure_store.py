"""
Authenticated encryption for credential blobs stored in the accounts table.

Blobs are AES-256-GCM with a random 12 byte nonce, hex encoded as
nonce || tag || ciphertext. The key is derived from a stable local secret
(the user data directory path, or a fixed portable secret).
"""

import hashlib
import os
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .logger import setup_logger

logger = setup_logger()

NONCE_SIZE = 12
TAG_SIZE = 16
PORTABLE_SECRET = "PlayHub-Portable-Secure-Key"


def derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


class SecureStore:
    def __init__(self, key: bytes):
        if len(key) != 32:
            raise ValueError("SecureStore key must be 32 bytes")
        self._aead = AESGCM(key)

    @classmethod
    def for_data_dir(cls, data_dir: Path, portable: bool = False) -> "SecureStore":
        secret = PORTABLE_SECRET if portable else str(data_dir)
        return cls(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; the stored layout puts it before the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return (nonce + tag + ciphertext).hex()

    def decrypt(self, blob: Optional[str]) -> Optional[str]:
        """Returns None for any blob that is missing, malformed or fails authentication."""
        if not blob:
            return None
        try:
            raw = bytes.fromhex(blob)
        except ValueError:
            logger.warning("Stored credential is not valid hex")
            return None
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            logger.warning("Stored credential is truncated")
            return None

        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            logger.warning("Stored credential failed authentication, treating as absent")
            return None
        return plaintext.decode("utf-8")
