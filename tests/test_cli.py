"""
Tests for the operator CLI entry points that need no database.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pii_keyring import validate_key_hex
from pii_keyring.cli import build_parser, main, parse_since


def test_generate_key_prints_valid_hex(capsys: pytest.CaptureFixture) -> None:
    assert main(["generate-key"]) == 0

    key_hex = capsys.readouterr().out.strip()
    assert len(validate_key_hex(key_hex)) == 32


def test_migrate_arguments() -> None:
    args = build_parser().parse_args(
        ["migrate", "--table", "customers", "--target", "v2", "--batch-size", "500", "--lower", "1"]
    )

    assert args.command == "migrate"
    assert args.batch_size == 500
    assert args.lower == 1
    assert args.upper is None
    assert args.value_column == "pii_ciphertext"


def test_migrate_requires_target() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["migrate", "--table", "customers"])


def test_missing_database_url(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
    monkeypatch.setenv("DATABASE_URL", "")

    assert main(["status", "--table", "customers", "--target", "v2"]) == 1
    assert "DATABASE_URL" in capsys.readouterr().out


def test_invalid_settings_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PII_MIGRATION_BATCH_SIZE", "zero")

    assert main(["status", "--table", "customers", "--target", "v2"]) == 2


def test_since_without_offset_is_utc() -> None:
    args = build_parser().parse_args(["rotation-log", "--since", "2026-01-01T00:00:00"])

    assert args.since == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_since_keeps_offset() -> None:
    since = parse_since("2026-01-01T02:00:00+02:00")

    assert since.utcoffset() == timedelta(hours=2)
    assert since == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_invalid_since() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["rotation-log", "--since", "yesterday"])


def test_check_retirable_arguments() -> None:
    args = build_parser().parse_args(["check-retirable", "--table", "customers", "--version", "v1"])

    assert args.command == "check-retirable"
    assert args.version == "v1"


def test_retire_is_not_a_command() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["retire", "--table", "customers", "--version", "v1"])
