"""Tests for encryption module."""

import pytest
from cryptography.exceptions import InvalidTag

from feedsync.encryption import TokenCipher, generate_encryption_key


def test_generate_encryption_key():
    """Test encryption key generation."""
    key = generate_encryption_key()
    assert len(key) == 32
    assert isinstance(key, bytes)


def test_token_cipher_seal_open():
    cipher = TokenCipher(generate_encryption_key())

    sealed = cipher.seal("ya29.access-token")

    assert b"ya29" not in sealed
    assert cipher.open(sealed) == "ya29.access-token"


def test_sealing_uses_fresh_nonces():
    cipher = TokenCipher(generate_encryption_key())
    assert cipher.seal("same") != cipher.seal("same")


def test_open_with_wrong_key_fails():
    sealed = TokenCipher(generate_encryption_key()).seal("secret")

    with pytest.raises(InvalidTag):
        TokenCipher(generate_encryption_key()).open(sealed)


def test_short_key_and_truncated_ciphertext_are_rejected():
    with pytest.raises(ValueError):
        TokenCipher(b"too-short")

    with pytest.raises(ValueError):
        TokenCipher(generate_encryption_key()).open(b"\x00" * 12)


def test_get_encryption_key_reads_key_file(tmp_path, monkeypatch):
    from feedsync.config import Settings, get_encryption_key
    from feedsync import config as module

    key = generate_encryption_key()
    key_file = tmp_path / "encryption.key"
    key_file.write_bytes(key + b"\n")

    monkeypatch.setattr(module, "get_settings", lambda: Settings(encryption_key_file=str(key_file)))
    assert get_encryption_key() == key

    missing = tmp_path / "missing.key"
    monkeypatch.setattr(module, "get_settings", lambda: Settings(encryption_key_file=str(missing)))
    with pytest.raises(RuntimeError):
        get_encryption_key()
