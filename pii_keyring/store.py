"""
Record store abstractions for the re-encryption pipeline.

This module provides:
- MigrationStatus: Cursor state machine (running -> paused -> running -> complete)
- Partition: Half-open id range owned by one engine instance
- partition_range: Range-sharding function producing disjoint partitions
- MigrationCursor: Durable migration progress
- StoredRecord / RecordUpdate: One protected field as stored, and its rewrite
- RecordStore: Abstract async backend implemented in memory and on PostgreSQL
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .errors import CursorCorruptError
from .values import EncryptedValue


class MigrationStatus(Enum):
    """Migration cursor status (matches database ENUM)."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETE = "complete"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_str(cls, s: str) -> MigrationStatus:
        """Parse from string."""
        try:
            return cls(s.lower())
        except (ValueError, AttributeError):
            raise CursorCorruptError(f"Invalid migration status: {s!r}")


@dataclass(frozen=True)
class Partition:
    """
    Half-open range ``[lower, upper)`` over record ids.

    None on either side means unbounded. Engine instances running in
    parallel must each own a different, non-overlapping partition.
    """

    lower: Optional[int] = None
    upper: Optional[int] = None

    def __post_init__(self) -> None:
        if self.lower is not None and self.upper is not None and self.lower >= self.upper:
            raise ValueError(f"Empty partition: [{self.lower}, {self.upper})")

    @property
    def name(self) -> str:
        """Stable name used to key cursors."""
        if self.lower is None and self.upper is None:
            return "all"
        lower = "min" if self.lower is None else str(self.lower)
        upper = "max" if self.upper is None else str(self.upper)
        return f"{lower}..{upper}"

    def contains(self, key: int) -> bool:
        if self.lower is not None and key < self.lower:
            return False
        if self.upper is not None and key >= self.upper:
            return False
        return True


def partition_range(
    lower: int,
    upper: int,
    count: int,
    open_ended: bool = True,
) -> List[Partition]:
    """
    Split ``[lower, upper)`` into ``count`` contiguous disjoint partitions.

    Args:
        lower: Smallest id to cover
        upper: One past the largest id to cover
        count: Number of partitions
        open_ended: Leave the first partition unbounded below and the last
            unbounded above, so ids outside the sampled range are still owned
            by exactly one partition

    Returns:
        Partitions ordered by id range
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if upper <= lower:
        raise ValueError("upper must be greater than lower")

    span = upper - lower
    count = min(count, span)
    step, remainder = divmod(span, count)

    bounds = [lower]
    for i in range(count):
        bounds.append(bounds[-1] + step + (1 if i < remainder else 0))

    partitions = []
    for i in range(count):
        start: Optional[int] = bounds[i]
        end: Optional[int] = bounds[i + 1]
        if open_ended and i == 0:
            start = None
        if open_ended and i == count - 1:
            end = None
        partitions.append(Partition(lower=start, upper=end))
    return partitions


@dataclass
class MigrationCursor:
    """
    Persisted migration progress for one (target version, partition).

    last_key is the ordering key of the last record in the last committed
    batch; everything at or before it is done.
    """

    target_version: str
    partition: str
    batch_size: int
    last_key: Optional[int] = None
    status: MigrationStatus = MigrationStatus.RUNNING
    rows_processed: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class StoredRecord:
    """One protected field as stored: version tag plus AEAD blob."""

    record_id: int
    version: str
    blob: bytes


@dataclass(frozen=True)
class RecordUpdate:
    """Rewrite of one record; old_blob guards against concurrent writes."""

    record_id: int
    old_blob: bytes
    new_value: EncryptedValue


class RecordStore(ABC):
    """
    Abstract record store used by the migration engine.

    All methods are async to support both in-memory and database backends.
    """

    @abstractmethod
    async def fetch_batch(
        self,
        target_version: str,
        after_key: Optional[int],
        partition: Partition,
        limit: int,
    ) -> List[StoredRecord]:
        """
        Fetch up to ``limit`` records in the partition, ordered by id
        ascending, with id > after_key and a version different from
        target_version.
        """
        ...

    @abstractmethod
    async def commit_batch(
        self,
        updates: Sequence[RecordUpdate],
        cursor: MigrationCursor,
    ) -> int:
        """
        Write every update and persist the cursor as one all-or-nothing unit.

        Returns:
            Number of records written (always len(updates))

        Raises:
            ConcurrentWriteError: If any record no longer holds old_blob, i.e.
                it was rewritten or deleted after the fetch (nothing applied)
            StorageError: If the unit could not be committed (nothing applied)
        """
        ...

    @abstractmethod
    async def load_cursor(
        self, target_version: str, partition: Partition
    ) -> Optional[MigrationCursor]:
        """
        Load the persisted cursor, or None if none exists.

        Raises:
            CursorCorruptError: If the persisted cursor cannot be read
        """
        ...

    @abstractmethod
    async def save_cursor(self, cursor: MigrationCursor) -> None:
        """Persist a cursor status change without touching records."""
        ...

    @abstractmethod
    async def version_counts(self, partition: Partition) -> Dict[str, int]:
        """Number of records per key version within the partition."""
        ...
