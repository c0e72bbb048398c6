"""
Exception classes for key management and re-encryption operations.

Every error raised by this package derives from KeyringError so callers can
catch the whole family in one place, while still reacting to specific cases
(for example alerting on AuthenticationFailedError instead of retrying).
"""

from __future__ import annotations

from typing import Optional


class KeyringError(Exception):
    """Base exception for all key management operations."""

    pass


class InvalidKeyLengthError(KeyringError):
    """Key material is not exactly 256 bits."""

    pass


class KeyAlreadyRegisteredError(KeyringError):
    """A key version with the same identifier is already registered."""

    pass


class KeyNotFoundError(KeyringError):
    """Key version is not registered (never existed or already retired)."""

    pass


class NoPrimaryKeyError(KeyringError):
    """No primary key version is set, so nothing can be encrypted."""

    pass


class AuthenticationFailedError(KeyringError):
    """
    Authenticated decryption failed.

    Raised for a wrong key, tampered nonce/ciphertext/tag or mismatched
    associated data. The message is deliberately generic.
    """

    pass


class InvalidKeyStateError(KeyringError):
    """Key is in an invalid state for the requested operation."""

    pass


class StorageError(KeyringError):
    """Storage backend error (database, in-memory, etc.)."""

    pass


class ConcurrentWriteError(StorageError):
    """
    A record changed between fetch and commit.

    The whole batch was rolled back; re-reading the batch boundary picks up
    the new value.
    """

    pass


class SerializationError(KeyringError):
    """Serialization or deserialization error."""

    pass


class ConfigError(KeyringError):
    """Configuration error."""

    pass


class CursorCorruptError(KeyringError):
    """Persisted migration cursor is unreadable or inconsistent with its run."""

    pass


class MigrationBatchFailedError(KeyringError):
    """
    A migration batch could not be committed.

    None of the batch's writes took effect and the cursor did not advance.
    """

    def __init__(
        self,
        message: str,
        *,
        target_version: Optional[str] = None,
        after_key: Optional[int] = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.target_version = target_version
        self.after_key = after_key
        self.attempts = attempts
