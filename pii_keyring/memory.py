"""
In-memory backends for testing and single-process use.

This module provides:
- InMemoryRotationLog: RotationLog kept in a list
- InMemoryRecordStore: RecordStore over a dict of records and cursors

Both use asyncio.Lock for safe concurrent access.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .audit import RotationAction, RotationEvent, RotationLog
from .errors import ConcurrentWriteError
from .store import MigrationCursor, Partition, RecordStore, RecordUpdate, StoredRecord
from .values import EncryptedValue


class InMemoryRotationLog(RotationLog):
    """Append-only rotation log kept in memory."""

    def __init__(self) -> None:
        self._events: List[RotationEvent] = []
        self._lock = asyncio.Lock()

    async def append(self, event: RotationEvent) -> RotationEvent:
        async with self._lock:
            stored = replace(event, sequence=len(self._events) + 1)
            self._events.append(stored)
            return stored

    async def list(
        self,
        since: Optional[datetime] = None,
        action: Optional[RotationAction] = None,
    ) -> List[RotationEvent]:
        async with self._lock:
            return [
                e
                for e in self._events
                if (since is None or e.timestamp >= since)
                and (action is None or e.action == action)
            ]


class InMemoryRecordStore(RecordStore):
    """
    In-memory record store.

    Records map id -> StoredRecord; cursors map (target version, partition
    name) -> MigrationCursor. A batch commit checks every old blob, then
    stages the updates on a copy and swaps it in under the lock, so it
    applies fully or not at all.
    """

    def __init__(self) -> None:
        self._records: Dict[int, StoredRecord] = {}
        self._cursors: Dict[Tuple[str, str], MigrationCursor] = {}
        self._lock = asyncio.Lock()

    async def put(self, record_id: int, value: EncryptedValue) -> None:
        """Store (or overwrite) a record, as the application would."""
        async with self._lock:
            self._records[record_id] = StoredRecord(
                record_id=record_id,
                version=value.version,
                blob=value.to_blob(),
            )

    async def get(self, record_id: int) -> Optional[StoredRecord]:
        async with self._lock:
            return self._records.get(record_id)

    async def get_value(self, record_id: int) -> Optional[EncryptedValue]:
        record = await self.get(record_id)
        if record is None:
            return None
        return EncryptedValue.from_blob(record.version, record.blob)

    async def fetch_batch(
        self,
        target_version: str,
        after_key: Optional[int],
        partition: Partition,
        limit: int,
    ) -> List[StoredRecord]:
        async with self._lock:
            matches = [
                r
                for key, r in sorted(self._records.items())
                if (after_key is None or key > after_key)
                and partition.contains(key)
                and r.version != target_version
            ]
            return matches[:limit]

    async def commit_batch(
        self,
        updates: Sequence[RecordUpdate],
        cursor: MigrationCursor,
    ) -> int:
        async with self._lock:
            staged = dict(self._records)
            for update in updates:
                current = staged.get(update.record_id)
                if current is None or current.blob != update.old_blob:
                    raise ConcurrentWriteError(
                        f"Record {update.record_id} changed since it was fetched"
                    )
                staged[update.record_id] = StoredRecord(
                    record_id=update.record_id,
                    version=update.new_value.version,
                    blob=update.new_value.to_blob(),
                )

            self._records = staged
            self._cursors[(cursor.target_version, cursor.partition)] = replace(cursor)
            return len(updates)

    async def load_cursor(
        self, target_version: str, partition: Partition
    ) -> Optional[MigrationCursor]:
        async with self._lock:
            cursor = self._cursors.get((target_version, partition.name))
            return replace(cursor) if cursor is not None else None

    async def save_cursor(self, cursor: MigrationCursor) -> None:
        async with self._lock:
            self._cursors[(cursor.target_version, cursor.partition)] = replace(cursor)

    async def version_counts(self, partition: Partition) -> Dict[str, int]:
        async with self._lock:
            counts: Dict[str, int] = {}
            for key, record in self._records.items():
                if partition.contains(key):
                    counts[record.version] = counts.get(record.version, 0) + 1
            return counts
