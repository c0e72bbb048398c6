"""
Tests for the AES-256-GCM primitive and key helpers.
"""

from __future__ import annotations

import pytest

from pii_keyring import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    AuthenticationFailedError,
    ConfigError,
    InvalidKeyLengthError,
    SecureKey,
    generate_key,
    generate_key_hex,
    validate_key_hex,
)


def _flip(data: bytes, index: int) -> bytes:
    mutated = bytearray(data)
    mutated[index] ^= 0x01
    return bytes(mutated)


@pytest.fixture
def key() -> SecureKey:
    return SecureKey.generate()


@pytest.mark.parametrize("plaintext", [b"", b"x", b"123-45-6789", bytes(range(256)) * 8])
def test_encrypt_decrypt_roundtrip(key: SecureKey, plaintext: bytes) -> None:
    sealed = AesGcmCipher.encrypt(key, plaintext, b"customer:1")

    assert len(sealed.nonce) == NONCE_SIZE
    assert len(sealed.tag) == TAG_SIZE
    assert len(sealed.ciphertext) == len(plaintext)
    assert AesGcmCipher.decrypt(key, sealed.nonce, sealed.ciphertext, sealed.tag, b"customer:1") == plaintext


def test_same_plaintext_gets_fresh_nonce_and_ciphertext(key: SecureKey) -> None:
    first = AesGcmCipher.encrypt(key, b"same plaintext")
    second = AesGcmCipher.encrypt(key, b"same plaintext")

    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext


def test_any_altered_byte_fails_authentication(key: SecureKey) -> None:
    aad = b"record-7"
    sealed = AesGcmCipher.encrypt(key, b"driver license D1234567", aad)

    for i in range(len(sealed.ciphertext)):
        with pytest.raises(AuthenticationFailedError):
            AesGcmCipher.decrypt(key, sealed.nonce, _flip(sealed.ciphertext, i), sealed.tag, aad)
    for i in range(TAG_SIZE):
        with pytest.raises(AuthenticationFailedError):
            AesGcmCipher.decrypt(key, sealed.nonce, sealed.ciphertext, _flip(sealed.tag, i), aad)
    for i in range(NONCE_SIZE):
        with pytest.raises(AuthenticationFailedError):
            AesGcmCipher.decrypt(key, _flip(sealed.nonce, i), sealed.ciphertext, sealed.tag, aad)
    for i in range(len(aad)):
        with pytest.raises(AuthenticationFailedError):
            AesGcmCipher.decrypt(key, sealed.nonce, sealed.ciphertext, sealed.tag, _flip(aad, i))


def test_missing_associated_data_fails(key: SecureKey) -> None:
    sealed = AesGcmCipher.encrypt(key, b"secret", b"record-1")

    with pytest.raises(AuthenticationFailedError):
        AesGcmCipher.decrypt(key, sealed.nonce, sealed.ciphertext, sealed.tag, None)


def test_wrong_key_fails(key: SecureKey) -> None:
    sealed = AesGcmCipher.encrypt(key, b"secret")

    with pytest.raises(AuthenticationFailedError):
        AesGcmCipher.decrypt(SecureKey.generate(), sealed.nonce, sealed.ciphertext, sealed.tag)


def test_truncated_tag_fails(key: SecureKey) -> None:
    sealed = AesGcmCipher.encrypt(key, b"secret")

    with pytest.raises(AuthenticationFailedError):
        AesGcmCipher.decrypt(key, sealed.nonce, sealed.ciphertext, sealed.tag[:-1])


@pytest.mark.parametrize("size", [0, 16, 31, 33, 64])
def test_secure_key_rejects_wrong_length(size: int) -> None:
    with pytest.raises(InvalidKeyLengthError):
        SecureKey(b"\x00" * size)


def test_secure_key_repr_is_redacted() -> None:
    key = SecureKey(b"\x41" * AES_256_KEY_SIZE)

    assert "41" not in repr(key)
    assert "REDACTED" in repr(key)


def test_generate_key_helpers() -> None:
    assert len(generate_key()) == AES_256_KEY_SIZE
    key_hex = generate_key_hex()
    assert len(key_hex) == 64
    assert validate_key_hex(key_hex) == bytes.fromhex(key_hex)


def test_validate_key_hex_errors() -> None:
    with pytest.raises(ConfigError):
        validate_key_hex("not-hex")
    with pytest.raises(InvalidKeyLengthError):
        validate_key_hex("ab" * 16)
