"""Tests for settings and retention cutoffs."""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path

import pytest
import typer
from pydantic import ValidationError

from imap_backup.cli.app import resolve_cutoff
from imap_backup.config.settings import AppSettings, RetentionSettings, StorageSettings


def test_retention_disabled_by_default() -> None:
    """No cutoff is configured unless asked for."""
    assert RetentionSettings().cutoff() is None


def test_delete_before_is_midnight_utc() -> None:
    """A cutoff date means the start of that day in UTC."""
    settings = RetentionSettings(delete_before=date(2021, 1, 1))

    assert settings.cutoff() == datetime(2021, 1, 1, tzinfo=UTC)


def test_older_than_days_is_relative_to_now() -> None:
    """Age-based retention counts back from the reference time."""
    now = datetime(2024, 3, 31, 12, 0, tzinfo=UTC)

    assert RetentionSettings(older_than_days=30).cutoff(now=now) == datetime(
        2024,
        3,
        1,
        12,
        0,
        tzinfo=UTC,
    )


def test_cutoff_sources_are_exclusive() -> None:
    """Only one way of expressing the cutoff is accepted."""
    with pytest.raises(ValidationError):
        RetentionSettings(delete_before=date(2021, 1, 1), older_than_days=3)
    with pytest.raises(ValidationError):
        RetentionSettings(older_than_days=0)


def test_storage_paths_derive_from_root(tmp_path: Path) -> None:
    """Archive, reports and database live under the root unless overridden."""
    storage = StorageSettings(root_dir=tmp_path, sqlite_path_override=tmp_path / "db" / "s.db")

    assert storage.archive_dir == tmp_path.resolve() / "archive"
    assert storage.reports_dir == tmp_path.resolve() / "reports"
    assert storage.sqlite_path == (tmp_path / "db" / "s.db").resolve()


def test_settings_load_from_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """Nested settings are read from prefixed environment variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("IMAP_BACKUP_IMAP__HOST", "imap.example.com")
    monkeypatch.setenv("IMAP_BACKUP_IMAP__USERNAME", "me")
    monkeypatch.setenv("IMAP_BACKUP_IMAP__PASSWORD", "secret")
    monkeypatch.setenv("IMAP_BACKUP_IMAP__CONNECTIONS", "4")
    monkeypatch.setenv("IMAP_BACKUP_RETENTION__OLDER_THAN_DAYS", "90")

    settings = AppSettings()

    assert settings.imap is not None
    assert settings.imap.host == "imap.example.com"
    assert settings.imap.connections == 4
    assert settings.imap.list_pattern == "%"
    assert "secret" not in repr(settings.imap)
    assert settings.retention.older_than_days == 90


def test_cli_cutoff_overrides_settings() -> None:
    """Command-line retention wins over configuration."""
    settings = AppSettings(retention=RetentionSettings(older_than_days=10))

    cutoff = resolve_cutoff(
        settings,
        delete_before=datetime(2020, 5, 6),
        delete_older_than_days=None,
    )

    assert cutoff == datetime(2020, 5, 6, tzinfo=UTC)
    assert resolve_cutoff(settings, delete_before=None, delete_older_than_days=None) is not None
    with pytest.raises(typer.BadParameter):
        resolve_cutoff(settings, delete_before=datetime(2020, 5, 6), delete_older_than_days=3)
