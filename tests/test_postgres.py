"""
Integration tests for the PostgreSQL backends.

Skipped unless DATABASE_URL points at a disposable database.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator

import asyncpg
import pytest

from pii_keyring import (
    ConcurrentWriteError,
    ConfigError,
    EncryptedValue,
    KeyManager,
    MigrationCursor,
    MigrationEngine,
    MigrationStatus,
    Partition,
    PostgresRecordStore,
    PostgresRotationLog,
    RecordUpdate,
    RotationAction,
    StorageError,
    create_schema,
    partition_range,
    run_partitioned,
)
from pii_keyring.migration import record_identity
from pii_keyring.postgres import _affected_rows


@pytest.fixture
async def schema_pool(pg_pool: asyncpg.Pool) -> asyncpg.Pool:
    await create_schema(pg_pool)
    return pg_pool


@pytest.fixture
async def pg_store(
    schema_pool: asyncpg.Pool, key_manager: KeyManager
) -> AsyncGenerator[PostgresRecordStore, None]:
    """Fresh customers table with ten rows under v1; v2 becomes primary."""
    await schema_pool.execute("DELETE FROM reencryption_cursors WHERE target_version = 'v2'")
    table = f"customers_{uuid.uuid4().hex[:12]}"
    await schema_pool.execute(
        f"""
        CREATE TABLE {table} (
            id              BIGINT PRIMARY KEY,
            pii_ciphertext  BYTEA,
            pii_key_version TEXT
        )
        """
    )
    for record_id in range(1, 11):
        value = key_manager.encrypt(f"ssn-{record_id}".encode(), record_identity(record_id))
        await schema_pool.execute(
            f"INSERT INTO {table} VALUES ($1, $2, $3)", record_id, value.to_blob(), value.version
        )
    # A row without PII is never touched
    await schema_pool.execute(f"INSERT INTO {table} (id) VALUES (11)")
    await key_manager.set_primary("v2")

    yield PostgresRecordStore(schema_pool, table)

    await schema_pool.execute(f"DROP TABLE {table}")
    await schema_pool.execute("DELETE FROM reencryption_cursors WHERE target_version = 'v2'")


async def _versions(store: PostgresRecordStore) -> dict:
    return await store.version_counts(Partition())


async def test_migration_end_to_end(pg_store: PostgresRecordStore, key_manager: KeyManager) -> None:
    stats = await MigrationEngine(key_manager, pg_store, batch_size=3).run("v2")

    assert stats.status is MigrationStatus.COMPLETE
    assert stats.rows_migrated == 10
    assert await _versions(pg_store) == {"v2": 10}

    for record in await pg_store.fetch_batch("v3", None, Partition(), 100):
        value = EncryptedValue.from_blob(record.version, record.blob)
        assert key_manager.decrypt(value, record_identity(record.record_id)) == (
            f"ssn-{record.record_id}".encode()
        )

    cursor = await pg_store.load_cursor("v2", Partition())
    assert cursor.status is MigrationStatus.COMPLETE
    assert cursor.last_key == 10


async def test_partitioned_migration(pg_store: PostgresRecordStore, key_manager: KeyManager) -> None:
    results = await run_partitioned(
        key_manager, pg_store, "v2", partition_range(1, 11, 3), batch_size=2
    )

    assert sum(r.rows_migrated for r in results) == 10
    assert await _versions(pg_store) == {"v2": 10}


async def test_commit_rolls_back_when_a_row_changed(
    pg_store: PostgresRecordStore, key_manager: KeyManager
) -> None:
    batch = await pg_store.fetch_batch("v2", None, Partition(), 5)
    assert [r.record_id for r in batch] == [1, 2, 3, 4, 5]
    updates = [
        RecordUpdate(
            record_id=r.record_id,
            old_blob=r.blob,
            new_value=key_manager.reencrypt(
                EncryptedValue.from_blob(r.version, r.blob), record_identity(r.record_id)
            ),
        )
        for r in batch
    ]

    fresh = key_manager.encrypt(b"updated", record_identity(3))
    await pg_store.pool.execute(
        f"UPDATE {pg_store._table} SET pii_ciphertext = $1, pii_key_version = $2 WHERE id = 3",
        fresh.to_blob(),
        fresh.version,
    )
    cursor = MigrationCursor(target_version="v2", partition="all", batch_size=5, last_key=5)
    with pytest.raises(ConcurrentWriteError):
        await pg_store.commit_batch(updates, cursor)

    rows = await pg_store.pool.fetch(
        f"SELECT pii_ciphertext, pii_key_version FROM {pg_store._table} "
        "WHERE id <= 5 ORDER BY id"
    )
    assert bytes(rows[2]["pii_ciphertext"]) == fresh.to_blob()
    assert [r["pii_key_version"] for r in rows] == ["v1", "v1", "v2", "v1", "v1"]
    assert await pg_store.load_cursor("v2", Partition()) is None


async def test_invalid_identifier(schema_pool: asyncpg.Pool) -> None:
    with pytest.raises(ConfigError):
        PostgresRecordStore(schema_pool, "customers; DROP TABLE x")


async def test_missing_table_is_storage_error(schema_pool: asyncpg.Pool) -> None:
    store = PostgresRecordStore(schema_pool, f"missing_{uuid.uuid4().hex[:12]}")

    with pytest.raises(StorageError):
        await store.fetch_batch("v2", None, Partition(), 10)


async def test_rotation_log_roundtrip(schema_pool: asyncpg.Pool) -> None:
    log = PostgresRotationLog(schema_pool)
    since = datetime.now(timezone.utc)
    operator = f"op-{uuid.uuid4().hex[:8]}"
    manager = KeyManager(rotation_log=log, operator=operator)

    await manager.register("v1", bytes(range(32)))
    await manager.register("v2", bytes(range(32, 64)))
    await manager.set_primary("v1")
    await manager.set_primary("v2")
    await manager.retire("v1")

    events = [e for e in await log.list(since=since) if e.operator == operator]
    assert [(e.action, e.old_version, e.new_version) for e in events] == [
        (RotationAction.REGISTER, None, "v1"),
        (RotationAction.REGISTER, None, "v2"),
        (RotationAction.SET_PRIMARY, None, "v1"),
        (RotationAction.SET_PRIMARY, "v1", "v2"),
        (RotationAction.RETIRE, "v1", None),
    ]
    assert [e.sequence for e in events] == sorted(e.sequence for e in events)


async def test_rotation_log_is_append_only(schema_pool: asyncpg.Pool) -> None:
    log = PostgresRotationLog(schema_pool)
    await KeyManager(rotation_log=log, operator="append-only-check").register("v1", bytes(32))

    with pytest.raises(asyncpg.PostgresError):
        await schema_pool.execute("DELETE FROM key_rotation_log")


def test_affected_rows_parses_command_tag() -> None:
    assert _affected_rows("UPDATE 3") == 3
    assert _affected_rows("UPDATE 0") == 0


@pytest.mark.parametrize("status", ["UPDATE", "", None])
def test_affected_rows_rejects_malformed_tag(status) -> None:
    with pytest.raises(StorageError):
        _affected_rows(status)
