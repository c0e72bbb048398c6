"""
Tests for stored value formats.
"""

from __future__ import annotations

import pytest

from pii_keyring import EncryptedValue, KeyManager, SerializationError, is_encrypted, token_version


async def test_token_roundtrip_preserves_fields(key_manager: KeyManager) -> None:
    value = key_manager.encrypt(b"555-0100", b"17")
    token = value.to_token()

    assert token.startswith("enc:v1:v1:")
    assert EncryptedValue.from_token(token) == value
    assert key_manager.decrypt(EncryptedValue.from_token(token), b"17") == b"555-0100"


async def test_blob_layout(key_manager: KeyManager) -> None:
    value = key_manager.encrypt(b"abc", b"1")
    blob = value.to_blob()

    assert blob == value.nonce + value.ciphertext + value.tag
    assert EncryptedValue.from_blob("v1", blob) == value


def test_blob_too_small() -> None:
    with pytest.raises(SerializationError):
        EncryptedValue.from_blob("v1", b"\x00" * 27)


@pytest.mark.parametrize(
    "token",
    [
        "plaintext",
        "enc:v1:",
        "enc:v1:v2",
        "enc:v1::AAAA",
        "enc:v1:v2:not base64!",
        "enc:v1:v2:AAAA",
    ],
)
def test_malformed_tokens(token: str) -> None:
    with pytest.raises(SerializationError):
        EncryptedValue.from_token(token)


async def test_is_encrypted_and_token_version(key_manager: KeyManager) -> None:
    token = key_manager.encrypt(b"x").to_token()

    assert is_encrypted(token)
    assert not is_encrypted("123-45-6789")
    assert not is_encrypted("")
    assert not is_encrypted(None)
    assert token_version(token) == "v1"
