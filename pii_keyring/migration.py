"""
Live re-encryption of stored records to a target key version.

This module provides:
- MigrationEngine: Batch re-encryption with a persisted, resumable cursor
- MigrationStats: Result of one engine run
- MigrationProgress: Version distribution and completion fraction
- run_partitioned: Run one engine per disjoint partition concurrently
- check_unreferenced: Confirm no record uses a key version, without retiring it
- retire_if_unreferenced: Retire a key version only once no record uses it

Migration strategy:
1. Resume from the cursor persisted for (target version, partition), or
   start before the first record id
2. Fetch the next batch of records ordered by id whose version differs
   from the target
3. Decrypt each under its recorded version, encrypt under the target
4. Commit the rewrites and the advanced cursor as a single unit
5. Stop when a fetch comes back empty and mark the cursor complete

Failure policy:
- Storage failures retry the same batch boundary with exponential backoff,
  then escalate with a CRITICAL log and MigrationBatchFailedError
- A record rewritten by the application between fetch and commit rolls the
  batch back; the boundary is re-read at once, so the cursor never passes a
  record that is still on another version
- Row-level key or integrity errors abort the batch immediately; retrying
  cannot succeed until an operator restores the missing key
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import (
    AuthenticationFailedError,
    ConcurrentWriteError,
    CursorCorruptError,
    InvalidKeyStateError,
    KeyNotFoundError,
    MigrationBatchFailedError,
    SerializationError,
    StorageError,
)
from .keys import KeyManager, KeyStatus
from .store import (
    MigrationCursor,
    MigrationStatus,
    Partition,
    RecordStore,
    RecordUpdate,
)
from .values import EncryptedValue

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_RETRIES = 5
DEFAULT_BACKOFF_SECONDS = 0.5


def record_identity(record_id: int) -> bytes:
    """Default associated data: the owning record's id."""
    return str(record_id).encode("ascii")


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class MigrationStats:
    """Result of a MigrationEngine.run() call."""

    target_version: str
    partition: str
    rows_migrated: int = 0
    batches_committed: int = 0
    retries: int = 0
    conflicts: int = 0
    status: MigrationStatus = MigrationStatus.RUNNING
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def __str__(self) -> str:
        return (
            f"{self.partition} -> {self.target_version}: {self.rows_migrated} rows in "
            f"{self.batches_committed} batches ({self.status})"
        )


@dataclass(frozen=True)
class MigrationProgress:
    """Key version distribution within a partition."""

    target_version: str
    partition: str
    counts: Dict[str, int]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def migrated(self) -> int:
        return self.counts.get(self.target_version, 0)

    @property
    def remaining(self) -> int:
        return self.total - self.migrated

    @property
    def fraction(self) -> float:
        """Completion fraction; an empty partition counts as complete."""
        if self.total == 0:
            return 1.0
        return self.migrated / self.total


# =============================================================================
# Migration Engine
# =============================================================================


class MigrationEngine:
    """
    Re-encrypts every record of one partition to a single target version.

    One engine owns one partition. Run several engines over disjoint
    partitions (see run_partitioned) to parallelize; never point two engines
    at the same partition.
    """

    def __init__(
        self,
        key_manager: KeyManager,
        store: RecordStore,
        *,
        partition: Optional[Partition] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        associated_data: Callable[[int], bytes] = record_identity,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the engine.

        Args:
            key_manager: Registry holding both the recorded and target versions
            store: Record store holding records and cursors
            partition: Id range this engine owns (default: everything)
            batch_size: Records per committed batch
            max_retries: Retries of a failing batch boundary before escalating
            backoff_seconds: Base delay, doubled on each retry
            associated_data: Maps a record id to the associated data it was
                encrypted with
            sleep: Awaitable used for backoff delays
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        self._key_manager = key_manager
        self._store = store
        self._partition = partition if partition is not None else Partition()
        self._batch_size = batch_size
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._associated_data = associated_data
        self._sleep = sleep
        self._stop_requested = False

    @property
    def partition(self) -> Partition:
        return self._partition

    def request_stop(self) -> None:
        """
        Ask a running migration to pause at the next batch boundary.

        The in-flight batch always finishes its commit or rollback first. A
        request made before run() starts makes that run pause before its
        first batch.
        """
        self._stop_requested = True

    async def run(self, target_version: str) -> MigrationStats:
        """
        Migrate the partition to target_version.

        Args:
            target_version: Registered version every record should end up on

        Returns:
            MigrationStats with status COMPLETE, or PAUSED if a stop was requested

        Raises:
            KeyNotFoundError: If target_version is not registered
            CursorCorruptError: If the persisted cursor is inconsistent
            MigrationBatchFailedError: If a batch could not be committed; the
                cursor stays at the last committed boundary
        """
        if not self._key_manager.is_registered(target_version):
            raise KeyNotFoundError(f"Target key version {target_version} not found")

        try:
            return await self._run(target_version)
        finally:
            # A stop request applies to one run; the next run resumes
            self._stop_requested = False

    async def _run(self, target_version: str) -> MigrationStats:
        cursor = await self._resume(target_version)
        stats = MigrationStats(target_version=target_version, partition=self._partition.name)

        cursor = replace(cursor, status=MigrationStatus.RUNNING, updated_at=_now())
        await self._store.save_cursor(cursor)

        logger.info(
            "Starting re-encryption of partition %s to %s after key %s (batch size %d)",
            self._partition.name,
            target_version,
            cursor.last_key,
            self._batch_size,
        )

        while True:
            if self._stop_requested:
                cursor = replace(cursor, status=MigrationStatus.PAUSED, updated_at=_now())
                await self._store.save_cursor(cursor)
                stats.status = MigrationStatus.PAUSED
                stats.finished_at = _now()
                logger.info("Re-encryption paused at key %s: %s", cursor.last_key, stats)
                return stats

            advanced = await self._migrate_batch(cursor, stats)
            if advanced is None:
                break
            cursor = advanced

        cursor = replace(cursor, status=MigrationStatus.COMPLETE, updated_at=_now())
        await self._store.save_cursor(cursor)
        stats.status = MigrationStatus.COMPLETE
        stats.finished_at = _now()

        logger.info(
            "Re-encryption complete: %s in %.3fs", stats, stats.duration_seconds
        )
        return stats

    async def progress(self, target_version: str) -> MigrationProgress:
        """Version distribution and completion fraction for the partition."""
        counts = await self._store.version_counts(self._partition)
        return MigrationProgress(
            target_version=target_version,
            partition=self._partition.name,
            counts=counts,
        )

    async def verify(self, target_version: str) -> MigrationProgress:
        """
        Check that every record in the partition is on target_version.

        Raises:
            InvalidKeyStateError: If any record still carries another version
        """
        progress = await self.progress(target_version)
        if progress.remaining > 0:
            raise InvalidKeyStateError(
                f"{progress.remaining} records in partition {progress.partition} "
                f"are not on key version {target_version}"
            )
        logger.info(
            "Verification passed: all %d records in %s are on %s",
            progress.total,
            progress.partition,
            target_version,
        )
        return progress

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _resume(self, target_version: str) -> MigrationCursor:
        """Load and validate the persisted cursor, or start a new one."""
        cursor = await self._store.load_cursor(target_version, self._partition)

        if cursor is None:
            return MigrationCursor(
                target_version=target_version,
                partition=self._partition.name,
                batch_size=self._batch_size,
            )

        if cursor.target_version != target_version or cursor.partition != self._partition.name:
            raise CursorCorruptError(
                f"Cursor for {cursor.target_version}/{cursor.partition} loaded for "
                f"{target_version}/{self._partition.name}"
            )
        if cursor.last_key is not None and not self._partition.contains(cursor.last_key):
            raise CursorCorruptError(
                f"Cursor key {cursor.last_key} lies outside partition {self._partition.name}"
            )
        if cursor.batch_size < 1 or cursor.rows_processed < 0:
            raise CursorCorruptError(f"Cursor for {target_version} has invalid counters")

        if cursor.status == MigrationStatus.COMPLETE:
            # Fresh verification pass; with nothing mismatched it writes nothing
            logger.info(
                "Migration to %s already complete for %s; rescanning",
                target_version,
                self._partition.name,
            )
            return MigrationCursor(
                target_version=target_version,
                partition=self._partition.name,
                batch_size=self._batch_size,
            )

        logger.info(
            "Resuming %s migration to %s after key %s",
            cursor.status,
            target_version,
            cursor.last_key,
        )
        return replace(cursor, batch_size=self._batch_size)

    async def _migrate_batch(
        self, cursor: MigrationCursor, stats: MigrationStats
    ) -> Optional[MigrationCursor]:
        """
        Migrate the batch after cursor.last_key, retrying storage failures.

        Returns:
            The committed cursor, or None when no mismatched records remain
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self._process_batch(cursor)
            except (KeyNotFoundError, AuthenticationFailedError, SerializationError) as e:
                logger.error(
                    "Batch after key %s aborted for %s: %s",
                    cursor.last_key,
                    cursor.target_version,
                    e,
                )
                raise MigrationBatchFailedError(
                    f"Batch after key {cursor.last_key} could not be re-encrypted: {e}",
                    target_version=cursor.target_version,
                    after_key=cursor.last_key,
                    attempts=attempt,
                ) from e
            except StorageError as e:
                if attempt > self._max_retries:
                    logger.critical(
                        "Batch after key %s failed %d times for %s; operator action required: %s",
                        cursor.last_key,
                        attempt,
                        cursor.target_version,
                        e,
                    )
                    raise MigrationBatchFailedError(
                        f"Batch after key {cursor.last_key} failed after {attempt} attempts: {e}",
                        target_version=cursor.target_version,
                        after_key=cursor.last_key,
                        attempts=attempt,
                    ) from e

                stats.retries += 1
                if isinstance(e, ConcurrentWriteError):
                    # Nothing was applied; re-read the same boundary right away
                    stats.conflicts += 1
                    logger.info(
                        "Batch after key %s raced an application write (attempt %d), re-reading: %s",
                        cursor.last_key,
                        attempt,
                        e,
                    )
                    continue

                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Batch after key %s failed (attempt %d), retrying in %.2fs: %s",
                    cursor.last_key,
                    attempt,
                    delay,
                    e,
                )
                await self._sleep(delay)
                continue

            if result is None:
                return None

            advanced, written = result
            stats.rows_migrated += written
            stats.batches_committed += 1
            logger.info(
                "Committed batch up to key %s (%d rows, %d total)",
                advanced.last_key,
                written,
                stats.rows_migrated,
            )
            return advanced

    async def _process_batch(self, cursor: MigrationCursor) -> Optional[Tuple[MigrationCursor, int]]:
        records = await self._store.fetch_batch(
            cursor.target_version,
            cursor.last_key,
            self._partition,
            self._batch_size,
        )
        if not records:
            return None

        updates: List[RecordUpdate] = []
        for record in records:
            value = EncryptedValue.from_blob(record.version, record.blob)
            new_value = self._key_manager.reencrypt(
                value,
                self._associated_data(record.record_id),
                target_version=cursor.target_version,
            )
            updates.append(
                RecordUpdate(record_id=record.record_id, old_blob=record.blob, new_value=new_value)
            )

        advanced = replace(
            cursor,
            last_key=records[-1].record_id,
            rows_processed=cursor.rows_processed + len(updates),
            updated_at=_now(),
        )
        written = await self._store.commit_batch(updates, advanced)
        return advanced, written


# =============================================================================
# Operator helpers
# =============================================================================


async def run_partitioned(
    key_manager: KeyManager,
    store: RecordStore,
    target_version: str,
    partitions: Sequence[Partition],
    **engine_options,
) -> List[MigrationStats]:
    """
    Run one engine per partition concurrently.

    When one partition fails, the others are asked to stop at their next
    batch boundary and are awaited before the failure is re-raised, so no
    engine is left running unobserved.

    Returns:
        One MigrationStats per partition, in partition order

    Raises:
        ValueError: If any two partitions overlap
        MigrationBatchFailedError: The first partition failure, after every
            engine has stopped
    """
    _check_disjoint(partitions)
    engines = [
        MigrationEngine(key_manager, store, partition=p, **engine_options) for p in partitions
    ]

    async def run_one(engine: MigrationEngine) -> MigrationStats:
        try:
            return await engine.run(target_version)
        except Exception:
            for other in engines:
                if other is not engine:
                    other.request_stop()
            raise

    results = await asyncio.gather(*(run_one(e) for e in engines), return_exceptions=True)

    failures = [r for r in results if isinstance(r, BaseException)]
    if failures:
        for engine, result in zip(engines, results):
            if isinstance(result, BaseException):
                logger.error("Partition %s failed: %s", engine.partition.name, result)
            else:
                logger.info("Partition %s stopped: %s", engine.partition.name, result)
        raise failures[0]
    return list(results)


async def check_unreferenced(
    key_manager: KeyManager,
    store: RecordStore,
    version: str,
) -> None:
    """
    Check that a key version can be retired without losing data.

    Nothing is modified.

    Raises:
        KeyNotFoundError: If the version is not registered
        InvalidKeyStateError: If the version is primary or records still carry it
    """
    if key_manager.status(version) is KeyStatus.PRIMARY:
        raise InvalidKeyStateError(
            f"Key version {version} is primary; set another primary first"
        )
    counts = await store.version_counts(Partition())
    remaining = counts.get(version, 0)
    if remaining:
        raise InvalidKeyStateError(
            f"{remaining} records still reference key version {version}; migrate first"
        )


async def retire_if_unreferenced(
    key_manager: KeyManager,
    store: RecordStore,
    version: str,
    operator: Optional[str] = None,
) -> None:
    """
    Retire a key version once no stored record references it.

    Raises:
        InvalidKeyStateError: If records still carry the version, or it is primary
        KeyNotFoundError: If the version is not registered
    """
    await check_unreferenced(key_manager, store, version)
    await key_manager.retire(version, operator=operator)


def _check_disjoint(partitions: Sequence[Partition]) -> None:
    ordered = sorted(
        partitions, key=lambda p: float("-inf") if p.lower is None else p.lower
    )
    for prev, nxt in zip(ordered, ordered[1:]):
        prev_upper = float("inf") if prev.upper is None else prev.upper
        next_lower = float("-inf") if nxt.lower is None else nxt.lower
        if next_lower < prev_upper:
            raise ValueError(f"Partitions {prev.name} and {nxt.name} overlap")


def _now() -> datetime:
    return datetime.now(timezone.utc)
