"""
PII Keyring

Versioned AES-256-GCM key management for PII at rest, with zero-downtime key
rotation and a resumable bulk re-encryption engine.

Quick Start
-----------
```python
import asyncio
from pii_keyring import (
    InMemoryRecordStore,
    KeyManager,
    MigrationEngine,
    generate_key,
    retire_if_unreferenced,
)

async def main():
    keys = KeyManager(operator="ops@example.com")
    await keys.register("v1", generate_key())
    await keys.set_primary("v1")

    # Application writes: always under the primary version
    store = InMemoryRecordStore()
    await store.put(42, keys.encrypt(b"123-45-6789", b"42"))

    # Rotation: register, switch primary, migrate, retire
    await keys.register("v2", generate_key())
    await keys.set_primary("v2")
    await MigrationEngine(keys, store, batch_size=500).run("v2")
    await retire_if_unreferenced(keys, store, "v1")

asyncio.run(main())
```

Key Features
------------
- **AES-256-GCM**: Fresh random nonce per encryption, associated data binds
  each ciphertext to its owning record
- **Versioned Keys**: Old and new keys coexist; reads never fail mid-rotation
- **Rotation Log**: Append-only audit trail of every registry change
- **Resumable Migration**: Batches and cursor committed together, safe to
  interrupt, pause and resume, parallel over disjoint partitions
- **PostgreSQL Storage**: asyncpg-backed record store and rotation log
"""

__version__ = "0.1.0"

# =============================================================================
# Crypto Exports
# =============================================================================

from .crypto import (
    AES_256_KEY_SIZE,
    NONCE_SIZE,
    TAG_SIZE,
    AesGcmCipher,
    SealedData,
    SecureKey,
    generate_key,
    generate_key_hex,
    generate_random_bytes,
    validate_key_hex,
)
from .values import EncryptedValue, is_encrypted, token_version

# =============================================================================
# Error Exports
# =============================================================================

from .errors import (
    AuthenticationFailedError,
    ConcurrentWriteError,
    ConfigError,
    CursorCorruptError,
    InvalidKeyLengthError,
    InvalidKeyStateError,
    KeyAlreadyRegisteredError,
    KeyNotFoundError,
    KeyringError,
    MigrationBatchFailedError,
    NoPrimaryKeyError,
    SerializationError,
    StorageError,
)

# =============================================================================
# Key Management Exports
# =============================================================================

from .audit import RotationAction, RotationEvent, RotationLog
from .config import KeyMaterial, MigrationSettings, load_key_material, load_migration_settings
from .fields import FieldEncryptor, PIIField
from .keys import KeyManager, KeyStatus, KeyVersion

# =============================================================================
# Migration Exports
# =============================================================================

from .memory import InMemoryRecordStore, InMemoryRotationLog
from .migration import (
    MigrationEngine,
    MigrationProgress,
    MigrationStats,
    check_unreferenced,
    retire_if_unreferenced,
    run_partitioned,
)
from .store import (
    MigrationCursor,
    MigrationStatus,
    Partition,
    RecordStore,
    RecordUpdate,
    StoredRecord,
    partition_range,
)

# =============================================================================
# PostgreSQL Exports
# =============================================================================

from .postgres import PostgresRecordStore, PostgresRotationLog, create_schema

# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Version
    "__version__",
    # Crypto
    "AES_256_KEY_SIZE",
    "NONCE_SIZE",
    "TAG_SIZE",
    "AesGcmCipher",
    "SealedData",
    "SecureKey",
    "EncryptedValue",
    "generate_key",
    "generate_key_hex",
    "generate_random_bytes",
    "validate_key_hex",
    "is_encrypted",
    "token_version",
    # Errors
    "KeyringError",
    "InvalidKeyLengthError",
    "KeyAlreadyRegisteredError",
    "KeyNotFoundError",
    "NoPrimaryKeyError",
    "AuthenticationFailedError",
    "InvalidKeyStateError",
    "MigrationBatchFailedError",
    "CursorCorruptError",
    "StorageError",
    "ConcurrentWriteError",
    "SerializationError",
    "ConfigError",
    # Key management
    "KeyManager",
    "KeyStatus",
    "KeyVersion",
    "KeyMaterial",
    "MigrationSettings",
    "load_key_material",
    "load_migration_settings",
    "RotationAction",
    "RotationEvent",
    "RotationLog",
    "FieldEncryptor",
    "PIIField",
    # Migration
    "MigrationEngine",
    "MigrationProgress",
    "MigrationStats",
    "MigrationCursor",
    "MigrationStatus",
    "Partition",
    "RecordStore",
    "RecordUpdate",
    "StoredRecord",
    "partition_range",
    "run_partitioned",
    "check_unreferenced",
    "retire_if_unreferenced",
    "InMemoryRecordStore",
    "InMemoryRotationLog",
    # PostgreSQL
    "PostgresRecordStore",
    "PostgresRotationLog",
    "create_schema",
]
