"""AES-256-GCM sealing of OAuth tokens stored in the database."""

import os
import secrets
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12


class TokenCipher:
    """Seals and opens token values. Ciphertext layout is nonce + ciphertext."""

    def __init__(self, key: bytes):
        if len(key) < 32:
            raise ValueError("Encryption key must be at least 32 bytes")
        self._aesgcm = AESGCM(key[:32])

    def seal(self, value: Union[str, bytes]) -> bytes:
        if isinstance(value, str):
            value = value.encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, value, None)

    def open(self, sealed: bytes) -> str:
        if len(sealed) <= NONCE_SIZE:
            raise ValueError("Invalid sealed token: too short")
        nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
        return self._aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8")


def generate_encryption_key() -> bytes:
    """Generate a new 32-byte encryption key."""
    return secrets.token_bytes(32)


_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get the process-wide cipher, loading the key file on first use."""
    global _token_cipher
    if _token_cipher is None:
        from feedsync.config import get_encryption_key
        _token_cipher = TokenCipher(get_encryption_key())
    return _token_cipher


def init_token_cipher(key: bytes) -> TokenCipher:
    """Install a cipher built from an explicit key (setup and tests)."""
    global _token_cipher
    _token_cipher = TokenCipher(key)
    return _token_cipher


def seal_token(value: str) -> bytes:
    return get_token_cipher().seal(value)


def open_token(sealed: bytes) -> str:
    return get_token_cipher().open(sealed)
