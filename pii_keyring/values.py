"""
Stored representation of an encrypted field.

Two wire formats are supported:

- AEAD blob: ``nonce(12) || ciphertext || tag(16)``, stored next to a
  separate key version column.
- Token: ``enc:v1:<version>:<base64(blob)>``, a single text column that
  carries its own version tag.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Optional

from .crypto import NONCE_SIZE, TAG_SIZE, SealedData
from .errors import SerializationError

ENCRYPTED_PREFIX = "enc:v1:"
VERSION_SEPARATOR = ":"


@dataclass(frozen=True)
class EncryptedValue:
    """
    An encrypted field value tagged with the key version that produced it.

    The associated data is not stored here; it is derived from the owning
    record's identity and must be supplied again at decrypt time.
    """

    version: str
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    @classmethod
    def from_sealed(cls, version: str, sealed: SealedData) -> EncryptedValue:
        return cls(
            version=version,
            nonce=sealed.nonce,
            ciphertext=sealed.ciphertext,
            tag=sealed.tag,
        )

    def to_blob(self) -> bytes:
        """Convert to AEAD blob format: nonce || ciphertext || tag."""
        return self.nonce + self.ciphertext + self.tag

    @classmethod
    def from_blob(cls, version: str, blob: bytes) -> EncryptedValue:
        """
        Parse from AEAD blob format: nonce || ciphertext || tag.

        Args:
            version: Key version recorded alongside the blob
            blob: Raw AEAD blob bytes

        Returns:
            EncryptedValue instance

        Raises:
            SerializationError: If blob is too small
        """
        min_size = NONCE_SIZE + TAG_SIZE
        if len(blob) < min_size:
            raise SerializationError(
                f"AEAD blob too small: expected at least {min_size} bytes, got {len(blob)}"
            )
        return cls(
            version=version,
            nonce=bytes(blob[:NONCE_SIZE]),
            ciphertext=bytes(blob[NONCE_SIZE:-TAG_SIZE]),
            tag=bytes(blob[-TAG_SIZE:]),
        )

    def to_token(self) -> str:
        """Encode as ``enc:v1:<version>:<base64>``."""
        encoded = base64.standard_b64encode(self.to_blob()).decode("ascii")
        return f"{ENCRYPTED_PREFIX}{self.version}{VERSION_SEPARATOR}{encoded}"

    @classmethod
    def from_token(cls, token: str) -> EncryptedValue:
        """
        Decode a token produced by to_token().

        Raises:
            SerializationError: If the token is malformed
        """
        if not is_encrypted(token):
            raise SerializationError("Value is not an encrypted token")

        version, sep, encoded = token[len(ENCRYPTED_PREFIX):].partition(VERSION_SEPARATOR)
        if not sep or not version:
            raise SerializationError("Invalid ciphertext format")

        try:
            blob = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SerializationError(f"Base64 decode error: {e}") from e

        return cls.from_blob(version, blob)


def is_encrypted(value: Optional[str]) -> bool:
    """Check whether a stored text value is an encrypted token."""
    return bool(value) and value.startswith(ENCRYPTED_PREFIX)


def token_version(value: str) -> str:
    """
    Extract the key version from an encrypted token without decrypting it.

    Raises:
        SerializationError: If the value is not a well-formed token
    """
    return EncryptedValue.from_token(value).version
