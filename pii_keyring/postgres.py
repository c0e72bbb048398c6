"""
PostgreSQL backends.

This module provides:
- PostgresRecordStore: RecordStore over an application table with one
  ciphertext column and one key version column per protected field
- PostgresRotationLog: Append-only rotation log table
- create_schema: Creates the cursor and rotation log tables

Batch isolation:
- Each record's ciphertext and version tag are written by one UPDATE, so a
  concurrent reader sees either the old pair or the new pair.
- All UPDATEs of a batch and the cursor upsert share one transaction.
- UPDATE ... WHERE value = old_value matches nothing for a row the
  application rewrote after the batch was fetched; the batch is then rolled
  back with ConcurrentWriteError and re-read by the engine.
- No lock is held between batches.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import asyncpg

from .audit import RotationAction, RotationEvent, RotationLog
from .errors import ConcurrentWriteError, ConfigError, StorageError
from .store import (
    MigrationCursor,
    MigrationStatus,
    Partition,
    RecordStore,
    RecordUpdate,
    StoredRecord,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS key_rotation_log (
    id          BIGSERIAL PRIMARY KEY,
    action      TEXT NOT NULL,
    old_version TEXT,
    new_version TEXT,
    operator    TEXT NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE OR REPLACE FUNCTION reject_key_rotation_log_change() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'key_rotation_log is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS key_rotation_log_append_only ON key_rotation_log;
CREATE TRIGGER key_rotation_log_append_only
    BEFORE UPDATE OR DELETE ON key_rotation_log
    FOR EACH ROW EXECUTE FUNCTION reject_key_rotation_log_change();

CREATE TABLE IF NOT EXISTS reencryption_cursors (
    target_version TEXT NOT NULL,
    partition      TEXT NOT NULL,
    batch_size     INTEGER NOT NULL,
    last_key       BIGINT,
    status         TEXT NOT NULL,
    rows_processed BIGINT NOT NULL DEFAULT 0,
    updated_at     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (target_version, partition)
);
"""

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


async def create_schema(pool: asyncpg.Pool) -> None:
    """Create the rotation log and cursor tables if they do not exist."""
    try:
        await pool.execute(SCHEMA)
    except Exception as e:
        raise StorageError(f"Failed to create schema: {e}") from e


def _quote(identifier: str) -> str:
    if not _IDENTIFIER.match(identifier):
        raise ConfigError(f"Invalid SQL identifier: {identifier!r}")
    return f'"{identifier}"'


# =============================================================================
# Record Store
# =============================================================================


class PostgresRecordStore(RecordStore):
    """
    PostgreSQL record store for one protected field.

    The table must have a BIGINT-compatible id column (the migration order),
    a BYTEA ciphertext column holding ``nonce || ciphertext || tag`` and a
    TEXT key version column.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        table: str,
        id_column: str = "id",
        value_column: str = "pii_ciphertext",
        version_column: str = "pii_key_version",
    ) -> None:
        """
        Initialize PostgreSQL record store.

        Args:
            pool: asyncpg connection pool
            table: Table holding the protected field
            id_column: Monotonic ordering key
            value_column: AEAD blob column
            version_column: Key version column

        Raises:
            ConfigError: If a table or column name is not a plain identifier
        """
        self._pool = pool
        self._table = _quote(table)
        self._id = _quote(id_column)
        self._value = _quote(value_column)
        self._version = _quote(version_column)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    def _bounds(self, first_param: int) -> str:
        lower, upper = f"${first_param}", f"${first_param + 1}"
        return (
            f"({lower}::BIGINT IS NULL OR {self._id} >= {lower}) "
            f"AND ({upper}::BIGINT IS NULL OR {self._id} < {upper})"
        )

    async def fetch_batch(
        self,
        target_version: str,
        after_key: Optional[int],
        partition: Partition,
        limit: int,
    ) -> List[StoredRecord]:
        query = f"""
            SELECT {self._id} AS record_id, {self._version} AS version, {self._value} AS blob
            FROM {self._table}
            WHERE ($1::BIGINT IS NULL OR {self._id} > $1)
              AND {self._bounds(2)}
              AND {self._value} IS NOT NULL
              AND {self._version} IS NOT NULL
              AND {self._version} <> $4
            ORDER BY {self._id}
            LIMIT $5
        """
        try:
            rows = await self._pool.fetch(
                query, after_key, partition.lower, partition.upper, target_version, limit
            )
        except Exception as e:
            raise StorageError(f"Failed to fetch batch: {e}") from e

        return [
            StoredRecord(
                record_id=row["record_id"],
                version=row["version"],
                blob=bytes(row["blob"]),
            )
            for row in rows
        ]

    async def commit_batch(
        self,
        updates: Sequence[RecordUpdate],
        cursor: MigrationCursor,
    ) -> int:
        update_query = f"""
            UPDATE {self._table}
            SET {self._value} = $2, {self._version} = $3
            WHERE {self._id} = $1 AND {self._value} = $4
        """
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    for update in updates:
                        status = await conn.execute(
                            update_query,
                            update.record_id,
                            update.new_value.to_blob(),
                            update.new_value.version,
                            update.old_blob,
                        )
                        if _affected_rows(status) != 1:
                            # Raising inside the transaction rolls back the whole batch
                            raise ConcurrentWriteError(
                                f"Record {update.record_id} changed since it was fetched"
                            )
                    await self._upsert_cursor(conn, cursor)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to commit batch: {e}") from e
        return len(updates)

    async def load_cursor(
        self, target_version: str, partition: Partition
    ) -> Optional[MigrationCursor]:
        query = """
            SELECT target_version, partition, batch_size, last_key, status,
                   rows_processed, updated_at
            FROM reencryption_cursors
            WHERE target_version = $1 AND partition = $2
        """
        try:
            row = await self._pool.fetchrow(query, target_version, partition.name)
        except Exception as e:
            raise StorageError(f"Failed to load cursor: {e}") from e

        if row is None:
            return None
        return MigrationCursor(
            target_version=row["target_version"],
            partition=row["partition"],
            batch_size=row["batch_size"],
            last_key=row["last_key"],
            status=MigrationStatus.from_str(row["status"]),
            rows_processed=row["rows_processed"],
            updated_at=row["updated_at"],
        )

    async def save_cursor(self, cursor: MigrationCursor) -> None:
        try:
            async with self._pool.acquire() as conn:
                await self._upsert_cursor(conn, cursor)
        except Exception as e:
            raise StorageError(f"Failed to save cursor: {e}") from e

    async def version_counts(self, partition: Partition) -> Dict[str, int]:
        query = f"""
            SELECT {self._version} AS version, COUNT(*) AS count
            FROM {self._table}
            WHERE {self._bounds(1)}
              AND {self._version} IS NOT NULL
            GROUP BY {self._version}
        """
        try:
            rows = await self._pool.fetch(query, partition.lower, partition.upper)
        except Exception as e:
            raise StorageError(f"Failed to count key versions: {e}") from e
        return {row["version"]: row["count"] for row in rows}

    @staticmethod
    async def _upsert_cursor(conn: asyncpg.Connection, cursor: MigrationCursor) -> None:
        await conn.execute(
            """
            INSERT INTO reencryption_cursors
                (target_version, partition, batch_size, last_key, status,
                 rows_processed, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (target_version, partition) DO UPDATE SET
                batch_size = EXCLUDED.batch_size,
                last_key = EXCLUDED.last_key,
                status = EXCLUDED.status,
                rows_processed = EXCLUDED.rows_processed,
                updated_at = EXCLUDED.updated_at
            """,
            cursor.target_version,
            cursor.partition,
            cursor.batch_size,
            cursor.last_key,
            cursor.status.value,
            cursor.rows_processed,
            cursor.updated_at,
        )


def _affected_rows(status: str) -> int:
    """Parse the row count from a command tag such as 'UPDATE 1'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError) as e:
        raise StorageError(f"Unexpected command status: {status!r}") from e


# =============================================================================
# Rotation Log
# =============================================================================


class PostgresRotationLog(RotationLog):
    """Rotation log stored in key_rotation_log, ordered by its BIGSERIAL id."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def append(self, event: RotationEvent) -> RotationEvent:
        query = """
            INSERT INTO key_rotation_log (action, old_version, new_version, operator, created_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING id
        """
        try:
            row = await self._pool.fetchrow(
                query,
                event.action.value,
                event.old_version,
                event.new_version,
                event.operator,
                event.timestamp,
            )
        except Exception as e:
            raise StorageError(f"Failed to append rotation event: {e}") from e

        return RotationEvent(
            action=event.action,
            old_version=event.old_version,
            new_version=event.new_version,
            operator=event.operator,
            timestamp=event.timestamp,
            sequence=row["id"],
        )

    async def list(
        self,
        since: Optional[datetime] = None,
        action: Optional[RotationAction] = None,
    ) -> List[RotationEvent]:
        query = """
            SELECT id, action, old_version, new_version, operator, created_at
            FROM key_rotation_log
            WHERE ($1::TIMESTAMPTZ IS NULL OR created_at >= $1)
              AND ($2::TEXT IS NULL OR action = $2)
            ORDER BY id
        """
        try:
            rows = await self._pool.fetch(query, since, action.value if action else None)
        except Exception as e:
            raise StorageError(f"Failed to list rotation events: {e}") from e

        return [
            RotationEvent(
                action=RotationAction.from_str(row["action"]),
                old_version=row["old_version"],
                new_version=row["new_version"],
                operator=row["operator"],
                timestamp=row["created_at"],
                sequence=row["id"],
            )
            for row in rows
        ]
