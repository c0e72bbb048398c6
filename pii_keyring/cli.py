"""
Key rotation operator CLI.

Usage:
    pii-keyring generate-key
    pii-keyring migrate --table customers --target v2 [--batch-size 500]
    pii-keyring status --table customers --target v2
    pii-keyring rotation-log [--since 2026-01-01T00:00:00+00:00]
    pii-keyring check-retirable --table customers --version v1

Or run directly:
    python -m pii_keyring.cli

PostgreSQL setup:
    1. Set DATABASE_URL and PII_ENCRYPTION_KEY* in the environment or .env file
    2. The cursor and rotation log tables are created on first use

Key material lives in the secret store, not in this tool. Every
database-backed command first reconciles the rotation log with the keys it
loaded: versions new to the log are recorded as registered, a changed
PII_ENCRYPTION_PRIMARY_VERSION as a primary switch, and versions missing
from the environment as retired.

Rotation:
    1. Add PII_ENCRYPTION_KEY_Vn and point PII_ENCRYPTION_PRIMARY_VERSION at it
       (redeploy the application so new writes use it)
    2. pii-keyring migrate --target vn
    3. pii-keyring check-retirable --version <old>
    4. Remove the old key variable; the next command records the retirement

Emergency rotation uses the same commands with a larger --batch-size.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

import asyncpg

from .config import (
    MigrationSettings,
    key_env_name,
    load_environment,
    load_key_material,
    load_migration_settings,
)
from .crypto import generate_key_hex
from .errors import KeyringError
from .keys import KeyManager
from .migration import MigrationEngine, check_unreferenced
from .postgres import PostgresRecordStore, PostgresRotationLog, create_schema
from .store import Partition

logger = logging.getLogger(__name__)


def parse_since(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; one without an offset is taken as UTC."""
    since = datetime.fromisoformat(value)
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return since


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pii-keyring", description=__doc__.splitlines()[1])
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("generate-key", help="Print a new random 256-bit key as hex")

    def add_table_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--table", required=True, help="Table holding the protected field")
        p.add_argument("--id-column", default="id")
        p.add_argument("--value-column", default="pii_ciphertext")
        p.add_argument("--version-column", default="pii_key_version")
        p.add_argument("--lower", type=int, default=None, help="Partition start id (inclusive)")
        p.add_argument("--upper", type=int, default=None, help="Partition end id (exclusive)")

    migrate = sub.add_parser("migrate", help="Re-encrypt records to a target key version")
    add_table_args(migrate)
    migrate.add_argument("--target", required=True, help="Target key version")
    migrate.add_argument("--batch-size", type=int, default=None)

    status = sub.add_parser("status", help="Show key version distribution")
    add_table_args(status)
    status.add_argument("--target", required=True, help="Target key version")

    log = sub.add_parser("rotation-log", help="List rotation events")
    log.add_argument("--since", type=parse_since, default=None)

    retirable = sub.add_parser(
        "check-retirable", help="Check that no record references a key version"
    )
    add_table_args(retirable)
    retirable.add_argument("--version", required=True, help="Key version to check")

    return parser


async def run_command(args: argparse.Namespace, settings: MigrationSettings) -> int:
    """Run a database-backed subcommand."""
    if not settings.database_url:
        print("ERROR: DATABASE_URL must be set in environment or .env file")
        return 1

    pool = await asyncpg.create_pool(settings.database_url)
    if pool is None:
        print("ERROR: Failed to create connection pool")
        return 1

    try:
        await create_schema(pool)
        rotation_log = PostgresRotationLog(pool)

        if args.command == "rotation-log":
            for event in await rotation_log.list(since=args.since):
                print(
                    f"{event.sequence:>6}  {event.timestamp.isoformat()}  {str(event.action):<11}  "
                    f"{event.old_version or '-':>6} -> {event.new_version or '-':<6}  {event.operator}"
                )
            return 0

        # A fresh in-process registry; it does not share state with the application.
        key_manager = await KeyManager.from_key_material(
            load_key_material(),
            rotation_log=rotation_log,
            operator=settings.operator,
            reconcile=True,
        )
        store = PostgresRecordStore(
            pool,
            args.table,
            id_column=args.id_column,
            value_column=args.value_column,
            version_column=args.version_column,
        )
        partition = Partition(lower=args.lower, upper=args.upper)

        if args.command == "check-retirable":
            await check_unreferenced(key_manager, store, args.version)
            print(f"No record in {args.table} references key version {args.version}.")
            print(
                f"Remove {key_env_name(args.version)} from the secret store; "
                "the next run records the retirement in the rotation log."
            )
            return 0

        engine = MigrationEngine(
            key_manager,
            store,
            partition=partition,
            batch_size=args.batch_size or settings.batch_size,
            max_retries=settings.max_retries,
            backoff_seconds=settings.backoff_seconds,
        )

        if args.command == "status":
            progress = await engine.progress(args.target)
            print(f"Partition {progress.partition}, target {progress.target_version}")
            for version, count in sorted(progress.counts.items()):
                print(f"  {version:<8} {count:>12}")
            print(f"  complete: {progress.fraction * 100:.2f}% ({progress.remaining} remaining)")
            return 0

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, engine.request_stop)
            except NotImplementedError:
                pass  # add_signal_handler is unavailable on Windows event loops

        stats = await engine.run(args.target)
        print(str(stats))
        return 0
    finally:
        await pool.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "generate-key":
        print(generate_key_hex())
        return 0

    load_environment()
    try:
        settings = load_migration_settings()
        return asyncio.run(run_command(args, settings))
    except KeyringError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
