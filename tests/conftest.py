"""
Pytest configuration and fixtures for key management tests.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import AsyncGenerator, Dict

import asyncpg
import pytest
from dotenv import load_dotenv

from pii_keyring import (
    InMemoryRecordStore,
    InMemoryRotationLog,
    KeyManager,
    generate_key,
)


@pytest.fixture
def key_bytes() -> Dict[str, bytes]:
    """Fixed 256-bit keys for versions v1..v3."""
    return {
        "v1": bytes(range(32)),
        "v2": bytes(range(32, 64)),
        "v3": generate_key(),
    }


@pytest.fixture
def rotation_log() -> InMemoryRotationLog:
    """Create an in-memory rotation log for testing."""
    return InMemoryRotationLog()


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Create an in-memory record store for testing."""
    return InMemoryRecordStore()


@pytest.fixture
async def key_manager(
    key_bytes: Dict[str, bytes], rotation_log: InMemoryRotationLog
) -> KeyManager:
    """KeyManager with v1 (primary) and v2 (active) registered."""
    manager = KeyManager(rotation_log=rotation_log, operator="tests")
    await manager.register("v1", key_bytes["v1"])
    await manager.register("v2", key_bytes["v2"])
    await manager.set_primary("v1")
    return manager


@pytest.fixture
async def pg_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Create a PostgreSQL connection pool for testing."""
    # Load environment from project root
    env_path = Path(__file__).parent.parent / ".env"
    load_dotenv(env_path)

    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set, skipping PostgreSQL tests")

    pool = await asyncpg.create_pool(database_url)
    if pool is None:
        pytest.skip("Failed to create PostgreSQL connection pool")

    yield pool

    await pool.close()
