"""
Versioned key registry.

This module provides:
- KeyStatus: Status of a registered key version
- KeyVersion: Snapshot of one registered version
- KeyManager: Owns the registered versions and the primary version, and is
  the only sanctioned entry point for versioned encrypt/decrypt

Concurrency model:
- The registry is an immutable snapshot swapped by a single attribute
  assignment. encrypt()/decrypt() read the current snapshot once and never
  block, from any thread.
- register()/set_primary()/retire() build a new snapshot under one
  asyncio.Lock, record the change in the rotation log, then publish the
  snapshot. A reader sees either the previous or the next registry, never a
  partial one.
- Retired versions are dropped from the registry and are indistinguishable
  from versions that never existed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional

from .audit import RotationAction, RotationEvent, RotationLog
from .crypto import AesGcmCipher, SecureKey
from .errors import (
    InvalidKeyStateError,
    KeyAlreadyRegisteredError,
    KeyNotFoundError,
    NoPrimaryKeyError,
)
from .memory import InMemoryRotationLog
from .values import EncryptedValue

if TYPE_CHECKING:
    from .config import KeyMaterial

logger = logging.getLogger(__name__)


class KeyStatus(Enum):
    """Key version status. Retired versions have no status: they are gone."""

    ACTIVE = "active"  # decrypt only
    PRIMARY = "primary"  # encrypt + decrypt

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class KeyVersion:
    """Registered key version."""

    version: str
    key: SecureKey = field(repr=False)
    status: KeyStatus
    created_at: datetime


@dataclass(frozen=True)
class _Registry:
    """Immutable registry snapshot."""

    keys: Mapping[str, KeyVersion]
    primary: Optional[str] = None

    def with_keys(self, keys: Dict[str, KeyVersion], primary: Optional[str]) -> _Registry:
        return _Registry(keys=MappingProxyType(keys), primary=primary)


class KeyManager:
    """
    Versioned encryption key manager.

    New values are always encrypted under the primary version; stored values
    are decrypted under whatever version they are tagged with.
    """

    def __init__(
        self,
        rotation_log: Optional[RotationLog] = None,
        operator: str = "system",
    ) -> None:
        """
        Initialize an empty registry.

        Args:
            rotation_log: Audit log receiving every registry change
                (defaults to an in-memory log)
            operator: Identity recorded on events when a call supplies none
        """
        self._registry = _Registry(keys=MappingProxyType({}))
        self._lock = asyncio.Lock()
        self._rotation_log = rotation_log if rotation_log is not None else InMemoryRotationLog()
        self._operator = operator

    @classmethod
    async def from_key_material(
        cls,
        material: KeyMaterial,
        rotation_log: Optional[RotationLog] = None,
        operator: str = "system",
        reconcile: bool = False,
    ) -> KeyManager:
        """
        Build a registry from key material supplied by the secret store.

        Without reconcile, nothing is appended to the rotation log; later
        register/set_primary/retire calls are recorded as usual.

        With reconcile, the rotation log is brought in line with the
        material first, so rotations performed in the secret store are
        audited by the next process that loads them:

        - register for every loaded version the log does not show as live
        - set_primary if the loaded primary differs from the last recorded one
        - retire for every version the log shows as live but the material
          no longer carries

        Loading the same material again appends nothing.

        Args:
            material: Ordered (version, key) pairs plus the primary version
            rotation_log: Audit log for registry changes
            operator: Identity recorded on those events
            reconcile: Record the differences between the log and the material

        Returns:
            KeyManager with every version registered and the primary set

        Raises:
            InvalidKeyLengthError: If any key is not 256 bits
            KeyAlreadyRegisteredError: If a version appears twice
            KeyNotFoundError: If the primary version is not among the keys
            StorageError: If reconciling and the rotation log is unavailable
        """
        manager = cls(rotation_log=rotation_log, operator=operator)
        now = datetime.now(timezone.utc)

        keys: Dict[str, KeyVersion] = {}
        for version, key_bytes in material.keys:
            if version in keys:
                raise KeyAlreadyRegisteredError(f"Key version {version} already exists")
            status = KeyStatus.PRIMARY if version == material.primary_version else KeyStatus.ACTIVE
            keys[version] = KeyVersion(
                version=version,
                key=SecureKey(key_bytes),
                status=status,
                created_at=now,
            )
        if material.primary_version not in keys:
            raise KeyNotFoundError(f"Primary key version {material.primary_version} not found")

        async with manager._lock:
            if reconcile:
                await manager._reconcile(list(keys), material.primary_version)
            manager._registry = manager._registry.with_keys(keys, material.primary_version)

        logger.info(
            "Loaded %d key versions, primary %s", len(keys), material.primary_version
        )
        return manager

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def rotation_log(self) -> RotationLog:
        return self._rotation_log

    @property
    def primary_version(self) -> Optional[str]:
        """Current primary version, or None if none is set."""
        return self._registry.primary

    def versions(self) -> List[str]:
        """Sorted list of registered versions."""
        return sorted(self._registry.keys)

    def is_registered(self, version: str) -> bool:
        return version in self._registry.keys

    def status(self, version: str) -> KeyStatus:
        """
        Status of a registered version.

        Raises:
            KeyNotFoundError: If the version is not registered
        """
        return self._get(self._registry, version).status

    def key_versions(self) -> List[KeyVersion]:
        """Snapshot of all registered versions, sorted by identifier."""
        registry = self._registry
        return [registry.keys[v] for v in sorted(registry.keys)]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def register(
        self,
        version: str,
        key_bytes: bytes,
        operator: Optional[str] = None,
    ) -> KeyVersion:
        """
        Register a new key version as ACTIVE (not primary).

        Args:
            version: Version identifier
            key_bytes: Raw 256-bit key
            operator: Identity recorded on the audit event

        Returns:
            The registered KeyVersion

        Raises:
            InvalidKeyLengthError: If key_bytes is not exactly 32 bytes
            KeyAlreadyRegisteredError: If version is already registered
        """
        key = SecureKey(key_bytes)

        async with self._lock:
            current = self._registry
            if version in current.keys:
                raise KeyAlreadyRegisteredError(f"Key version {version} already exists")

            key_version = KeyVersion(
                version=version,
                key=key,
                status=KeyStatus.ACTIVE,
                created_at=datetime.now(timezone.utc),
            )
            await self._record(RotationAction.REGISTER, None, version, operator)

            keys = dict(current.keys)
            keys[version] = key_version
            self._registry = current.with_keys(keys, current.primary)

        logger.info("Registered key version %s", version)
        return key_version

    async def set_primary(self, version: str, operator: Optional[str] = None) -> RotationEvent:
        """
        Make a registered version the primary, demoting the previous primary.

        Already-stored ciphertext is not touched.

        Args:
            version: Version to promote
            operator: Identity recorded on the audit event

        Returns:
            The appended RotationEvent

        Raises:
            KeyNotFoundError: If version is not registered (primary unchanged)
        """
        async with self._lock:
            current = self._registry
            target = self._get(current, version)
            old_primary = current.primary

            event = await self._record(RotationAction.SET_PRIMARY, old_primary, version, operator)

            keys = dict(current.keys)
            if old_primary is not None and old_primary != version:
                keys[old_primary] = _with_status(keys[old_primary], KeyStatus.ACTIVE)
            keys[version] = _with_status(target, KeyStatus.PRIMARY)
            self._registry = current.with_keys(keys, version)

        logger.info("Primary key version switched from %s to %s", old_primary, version)
        return event

    async def retire(self, version: str, operator: Optional[str] = None) -> None:
        """
        Remove a version from the registry.

        Any value still tagged with the version becomes permanently
        undecryptable, so only retire after a migration reports zero rows
        referencing it (see retire_if_unreferenced).

        Raises:
            KeyNotFoundError: If version is not registered
            InvalidKeyStateError: If version is the current primary
        """
        async with self._lock:
            current = self._registry
            self._get(current, version)
            if current.primary == version:
                raise InvalidKeyStateError(
                    f"Cannot retire primary key version {version}; set another primary first"
                )

            await self._record(RotationAction.RETIRE, version, None, operator)

            keys = dict(current.keys)
            del keys[version]
            self._registry = current.with_keys(keys, current.primary)

        logger.warning("Retired key version %s", version)

    # -------------------------------------------------------------------------
    # Encrypt / decrypt
    # -------------------------------------------------------------------------

    def encrypt(self, plaintext: bytes, associated_data: Optional[bytes] = None) -> EncryptedValue:
        """
        Encrypt under the current primary version.

        Args:
            plaintext: Data to encrypt
            associated_data: Owning record identity bound into the tag

        Raises:
            NoPrimaryKeyError: If no primary version is set
        """
        registry = self._registry
        if registry.primary is None:
            raise NoPrimaryKeyError("No primary key version is set")
        return self._seal(registry.keys[registry.primary], plaintext, associated_data)

    def encrypt_with(
        self,
        version: str,
        plaintext: bytes,
        associated_data: Optional[bytes] = None,
    ) -> EncryptedValue:
        """
        Encrypt under a specific registered version.

        Raises:
            KeyNotFoundError: If version is not registered
        """
        return self._seal(self._get(self._registry, version), plaintext, associated_data)

    def decrypt(self, value: EncryptedValue, associated_data: Optional[bytes] = None) -> bytes:
        """
        Decrypt under the version recorded on the value.

        Raises:
            KeyNotFoundError: If the value's version is not registered
            AuthenticationFailedError: If the tag does not verify
        """
        key_version = self._get(self._registry, value.version)
        return AesGcmCipher.decrypt(
            key_version.key,
            value.nonce,
            value.ciphertext,
            value.tag,
            associated_data,
        )

    def reencrypt(
        self,
        value: EncryptedValue,
        associated_data: Optional[bytes] = None,
        target_version: Optional[str] = None,
    ) -> EncryptedValue:
        """
        Decrypt under the recorded version and encrypt under target_version
        (or the primary when omitted).

        The value is always rewritten wholesale, even if it is already on
        the target version.
        """
        registry = self._registry
        if target_version is None:
            if registry.primary is None:
                raise NoPrimaryKeyError("No primary key version is set")
            target_version = registry.primary
        target = self._get(registry, target_version)

        plaintext = self.decrypt(value, associated_data)
        return self._seal(target, plaintext, associated_data)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _get(registry: _Registry, version: str) -> KeyVersion:
        key_version = registry.keys.get(version)
        if key_version is None:
            raise KeyNotFoundError(f"Key version {version} not found")
        return key_version

    @staticmethod
    def _seal(
        key_version: KeyVersion,
        plaintext: bytes,
        associated_data: Optional[bytes],
    ) -> EncryptedValue:
        sealed = AesGcmCipher.encrypt(key_version.key, plaintext, associated_data)
        return EncryptedValue.from_sealed(key_version.version, sealed)

    async def _reconcile(self, versions: List[str], primary: str) -> None:
        """Append the events that turn the logged registry into the loaded one."""
        live: List[str] = []
        logged_primary: Optional[str] = None
        for event in await self._rotation_log.list():
            if event.action is RotationAction.REGISTER and event.new_version not in live:
                live.append(event.new_version)
            elif event.action is RotationAction.SET_PRIMARY:
                logged_primary = event.new_version
            elif event.action is RotationAction.RETIRE and event.old_version in live:
                live.remove(event.old_version)

        for version in versions:
            if version not in live:
                await self._record(RotationAction.REGISTER, None, version, None)
        if logged_primary != primary:
            await self._record(RotationAction.SET_PRIMARY, logged_primary, primary, None)
        for version in live:
            if version not in versions:
                await self._record(RotationAction.RETIRE, version, None, None)
                logger.warning("Recorded retirement of key version %s", version)

    async def _record(
        self,
        action: RotationAction,
        old_version: Optional[str],
        new_version: Optional[str],
        operator: Optional[str],
    ) -> RotationEvent:
        """Append to the rotation log; the registry is only swapped if this succeeds."""
        event = RotationEvent(
            action=action,
            old_version=old_version,
            new_version=new_version,
            operator=operator or self._operator,
        )
        return await self._rotation_log.append(event)


def _with_status(key_version: KeyVersion, status: KeyStatus) -> KeyVersion:
    return KeyVersion(
        version=key_version.version,
        key=key_version.key,
        status=status,
        created_at=key_version.created_at,
    )
