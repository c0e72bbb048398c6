"""
Environment configuration.

Key material:
    PII_ENCRYPTION_KEY              hex key registered as version "v1"
    PII_ENCRYPTION_KEY_V2 ... _V10  further versions "v2" ... "v10"
    PII_ENCRYPTION_PRIMARY_VERSION  primary version (default "v1")

Migration:
    DATABASE_URL                    PostgreSQL DSN
    PII_MIGRATION_BATCH_SIZE        records per batch (default 100)
    PII_MIGRATION_MAX_RETRIES       retries per batch boundary (default 5)
    PII_MIGRATION_BACKOFF_SECONDS   base retry delay (default 0.5)
    PII_OPERATOR                    identity recorded on rotation events

Values may also come from a .env file (see load_environment).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .crypto import validate_key_hex
from .errors import ConfigError, InvalidKeyLengthError
from .migration import DEFAULT_BACKOFF_SECONDS, DEFAULT_BATCH_SIZE, DEFAULT_MAX_RETRIES

PRIMARY_KEY_ENV = "PII_ENCRYPTION_KEY"
PRIMARY_VERSION_ENV = "PII_ENCRYPTION_PRIMARY_VERSION"
MAX_KEY_VERSIONS = 10


@dataclass(frozen=True)
class KeyMaterial:
    """Ordered (version, key) pairs plus the designated primary version."""

    keys: List[Tuple[str, bytes]]
    primary_version: str

    def __repr__(self) -> str:
        versions = [v for v, _ in self.keys]
        return f"KeyMaterial(versions={versions}, primary_version={self.primary_version!r})"


@dataclass(frozen=True)
class MigrationSettings:
    """Settings for the migration CLI."""

    database_url: Optional[str]
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS
    operator: str = "system"


def load_environment(env_file: Optional[Path] = None) -> None:
    """Load a .env file into os.environ without overriding existing values."""
    load_dotenv(env_file)


def key_env_name(version: str) -> str:
    """
    Environment variable that carries a key version.

    Raises:
        ConfigError: If the version is not one of v1..v10
    """
    if version == "v1":
        return PRIMARY_KEY_ENV
    for i in range(2, MAX_KEY_VERSIONS + 1):
        if version == f"v{i}":
            return f"{PRIMARY_KEY_ENV}_V{i}"
    raise ConfigError(f"Key version {version} is not configurable through the environment")


def load_key_material(environ: Optional[Mapping[str, str]] = None) -> KeyMaterial:
    """
    Read key material from the environment.

    Args:
        environ: Mapping to read from (default: os.environ)

    Returns:
        KeyMaterial with v1 first, then v2..v10 where present

    Raises:
        ConfigError: If the primary key is missing, any key is malformed, or
            the primary version has no key
    """
    env = os.environ if environ is None else environ

    primary_hex = env.get(PRIMARY_KEY_ENV)
    if not primary_hex:
        raise ConfigError(f"{PRIMARY_KEY_ENV} must be set")

    keys = [("v1", _decode(PRIMARY_KEY_ENV, primary_hex))]
    for i in range(2, MAX_KEY_VERSIONS + 1):
        name = f"{PRIMARY_KEY_ENV}_V{i}"
        key_hex = env.get(name)
        if not key_hex:
            continue
        keys.append((f"v{i}", _decode(name, key_hex)))

    primary_version = env.get(PRIMARY_VERSION_ENV) or "v1"
    if primary_version not in {v for v, _ in keys}:
        raise ConfigError(
            f"{PRIMARY_VERSION_ENV}={primary_version} has no matching key configured"
        )

    return KeyMaterial(keys=keys, primary_version=primary_version)


def load_migration_settings(environ: Optional[Mapping[str, str]] = None) -> MigrationSettings:
    """
    Read migration settings from the environment.

    Raises:
        ConfigError: If a numeric setting is malformed or out of range
    """
    env = os.environ if environ is None else environ

    batch_size = _int(env, "PII_MIGRATION_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    max_retries = _int(env, "PII_MIGRATION_MAX_RETRIES", DEFAULT_MAX_RETRIES)
    if batch_size < 1:
        raise ConfigError("PII_MIGRATION_BATCH_SIZE must be at least 1")
    if max_retries < 0:
        raise ConfigError("PII_MIGRATION_MAX_RETRIES must not be negative")

    raw_backoff = env.get("PII_MIGRATION_BACKOFF_SECONDS")
    try:
        backoff = float(raw_backoff) if raw_backoff else DEFAULT_BACKOFF_SECONDS
    except ValueError:
        raise ConfigError(f"PII_MIGRATION_BACKOFF_SECONDS is not a number: {raw_backoff}")

    return MigrationSettings(
        database_url=env.get("DATABASE_URL"),
        batch_size=batch_size,
        max_retries=max_retries,
        backoff_seconds=backoff,
        operator=env.get("PII_OPERATOR") or "system",
    )


def _decode(name: str, key_hex: str) -> bytes:
    try:
        return validate_key_hex(key_hex)
    except (InvalidKeyLengthError, ConfigError) as e:
        raise ConfigError(f"Invalid key for {name}: {e}") from e


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} is not an integer: {raw}")
