"""
Cryptographic primitives for AES-256-GCM field encryption.

This module provides:
- SecureKey: Secure key wrapper with automatic zeroization
- SealedData: Cipher output split into nonce, ciphertext and tag
- AesGcmCipher: Stateless AES-256-GCM encryption/decryption for a single key
- Key helpers: generate_key, generate_key_hex, validate_key_hex
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import AuthenticationFailedError, ConfigError, InvalidKeyLengthError

# Cryptographic constants
AES_256_KEY_SIZE: int = 32  # 256 bits
NONCE_SIZE: int = 12  # 96 bits (standard for AES-GCM)
TAG_SIZE: int = 16  # 128 bits (authentication tag)


class SecureKey:
    """
    Secure key wrapper with automatic memory cleanup on deletion.

    Uses bytearray internally for mutable zeroing in __del__.
    Note: Python's garbage collector doesn't guarantee immediate cleanup,
    so this is best-effort zeroization.
    """

    __slots__ = ("_bytes",)

    def __init__(self, key_bytes: bytes | bytearray) -> None:
        """
        Create a SecureKey from raw bytes.

        Args:
            key_bytes: Raw key material (exactly 32 bytes for AES-256)

        Raises:
            InvalidKeyLengthError: If key_bytes is not 32 bytes
        """
        if not isinstance(key_bytes, (bytes, bytearray)):
            raise InvalidKeyLengthError("Key must be bytes or bytearray")
        if len(key_bytes) != AES_256_KEY_SIZE:
            raise InvalidKeyLengthError(
                f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key_bytes)}"
            )
        self._bytes = bytearray(key_bytes)

    @classmethod
    def generate(cls) -> SecureKey:
        """Generate a cryptographically secure random 32-byte key."""
        return cls(secrets.token_bytes(AES_256_KEY_SIZE))

    def as_bytes(self) -> bytes:
        """Return key as immutable bytes."""
        return bytes(self._bytes)

    def __len__(self) -> int:
        return len(self._bytes)

    def __repr__(self) -> str:
        """Redacted representation to prevent accidental key disclosure."""
        return "SecureKey([REDACTED])"

    def __del__(self) -> None:
        """Zero memory on deletion (best-effort)."""
        if hasattr(self, "_bytes"):
            for i in range(len(self._bytes)):
                self._bytes[i] = 0


@dataclass(frozen=True)
class SealedData:
    """Output of a single AES-GCM encryption."""

    nonce: bytes  # 12 bytes
    ciphertext: bytes  # same length as the plaintext
    tag: bytes  # 16 bytes


class AesGcmCipher:
    """
    AES-256-GCM authenticated encryption.

    Nonces are always generated inside encrypt(); callers cannot supply one,
    so a nonce can never be reused under the same key by accident.
    """

    @staticmethod
    def encrypt(
        key: SecureKey,
        plaintext: bytes,
        aad: Optional[bytes] = None,
    ) -> SealedData:
        """
        Encrypt plaintext with AES-256-GCM.

        Args:
            key: 32-byte encryption key
            plaintext: Data to encrypt
            aad: Optional Additional Authenticated Data bound into the tag

        Returns:
            SealedData with a fresh random nonce, ciphertext and tag
        """
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = AESGCM(key.as_bytes()).encrypt(nonce, plaintext, aad)

        return SealedData(
            nonce=nonce,
            ciphertext=sealed[:-TAG_SIZE],
            tag=sealed[-TAG_SIZE:],
        )

    @staticmethod
    def decrypt(
        key: SecureKey,
        nonce: bytes,
        ciphertext: bytes,
        tag: bytes,
        aad: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext with AES-256-GCM.

        Args:
            key: 32-byte decryption key
            nonce: 12-byte nonce used at encryption
            ciphertext: Encrypted bytes (without tag)
            tag: 16-byte authentication tag
            aad: Additional Authenticated Data (must match encryption)

        Returns:
            Decrypted plaintext bytes

        Raises:
            AuthenticationFailedError: If the nonce/tag is malformed or the
                tag does not verify
        """
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise AuthenticationFailedError("Decryption failed")

        try:
            return AESGCM(key.as_bytes()).decrypt(nonce, ciphertext + tag, aad)
        except InvalidTag:
            # Generic error to prevent oracle attacks
            raise AuthenticationFailedError("Decryption failed") from None


def generate_random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of bytes to generate

    Returns:
        Random bytes of specified length
    """
    return secrets.token_bytes(length)


def generate_key() -> bytes:
    """Generate a new random 256-bit key."""
    return generate_random_bytes(AES_256_KEY_SIZE)


def generate_key_hex() -> str:
    """Generate a new random 256-bit key as a hex string."""
    return generate_key().hex()


def validate_key_hex(key_hex: str) -> bytes:
    """
    Decode and validate a hex-encoded AES-256 key.

    Args:
        key_hex: 64 hex characters

    Returns:
        The decoded 32-byte key

    Raises:
        ConfigError: If the string is not valid hex
        InvalidKeyLengthError: If the decoded key is not 32 bytes
    """
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError as e:
        raise ConfigError(f"Invalid hex encoding: {e}") from e

    if len(key) != AES_256_KEY_SIZE:
        raise InvalidKeyLengthError(
            f"Invalid key size: expected {AES_256_KEY_SIZE}, got {len(key)}"
        )
    return key
