"""
crypto.py
---------
AES-256-GCM helpers for data at rest.

The fraud audit keeps full signal evidence (user agents, coordinates,
device fingerprints). With AUDIT_ENCRYPTION on, that payload is stored
encrypted and only signal types stay in clear for statistics.

Key: sha256(SECRET_KEY) → exactly 32 bytes.
Blob format: nonce (12 bytes) + ciphertext + GCM tag (16 bytes).
"""

import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from risk_engine.core.config import settings

NONCE_SIZE = 12   # 96 bits, NIST recommendation for GCM


def _key(secret: str | None = None) -> bytes:
    return hashlib.sha256((secret or settings.SECRET_KEY).encode()).digest()


def encrypt_blob(data: bytes, secret: str | None = None) -> bytes:
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(_key(secret)).encrypt(nonce, data, None)


def decrypt_blob(blob: bytes, secret: str | None = None) -> bytes:
    """Raises ValueError if the blob was tampered with or the key changed."""
    if len(blob) <= NONCE_SIZE:
        raise ValueError("Encrypted blob is too short.")
    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(_key(secret)).decrypt(nonce, ciphertext, None)
    except InvalidTag:
        raise ValueError("Authentication failed: data tampered or wrong key.") from None
