"""Typer CLI for the IMAP backup tool."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path

import typer

from imap_backup.config.settings import AppSettings, RetentionSettings, load_settings
from imap_backup.errors import BackupError, ProtocolError
from imap_backup.imap.client import ImapPool
from imap_backup.models.types import SummaryReport
from imap_backup.pipeline.catalog import list_folders
from imap_backup.pipeline.orchestrator import BackupOrchestrator
from imap_backup.storage.archive import LocalArchive
from imap_backup.storage.state_db import StateDb
from imap_backup.utils.logging import configure_logging

logger = logging.getLogger(__name__)

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Incremental IMAP mailbox backup to append-only mbox archives, with optional pruning.",
)

_MISSING_IMAP = (
    "Missing IMAP settings. Set at least IMAP_BACKUP_IMAP__HOST, "
    "IMAP_BACKUP_IMAP__USERNAME and IMAP_BACKUP_IMAP__PASSWORD."
)


def load_app_settings(*, env_file: Path | None) -> AppSettings:
    """Load application settings from the environment and optional .env file.

    Args:
        env_file: Optional path to a .env file to load in addition to environment variables.

    Returns:
        Validated application settings.
    """
    return load_settings(env_file=env_file)


def resolve_cutoff(
    settings: AppSettings,
    *,
    delete_before: datetime | None,
    delete_older_than_days: int | None,
) -> datetime | None:
    """Combine CLI retention options with configured retention.

    Command-line options win over settings; both CLI options together are rejected.

    Args:
        settings: Application settings.
        delete_before: `--delete-before` value.
        delete_older_than_days: `--delete-older-than-days` value.

    Returns:
        Retention cutoff, or None when nothing should be deleted.

    Raises:
        typer.BadParameter: If both CLI options are given.
    """
    if delete_before is not None and delete_older_than_days is not None:
        raise typer.BadParameter("use either --delete-before or --delete-older-than-days")
    if delete_before is not None:
        return RetentionSettings(delete_before=delete_before.date()).cutoff()
    if delete_older_than_days is not None:
        return RetentionSettings(older_than_days=delete_older_than_days).cutoff()
    return settings.retention.cutoff()


@app.command("backup")
def backup_cmd(
    *,
    env_file: Path | None = typer.Option(
        default=None,
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
    folder: list[str] | None = typer.Option(
        default=None,
        help="Back up only this folder (repeatable); overrides folder_include.",
    ),
    delete_before: datetime | None = typer.Option(
        default=None,
        formats=["%Y-%m-%d"],
        help="After archiving a folder, delete server messages dated before this day.",
    ),
    delete_older_than_days: int | None = typer.Option(
        default=None,
        min=1,
        help="After archiving a folder, delete server messages older than N days.",
    ),
) -> None:
    """Back up every selected folder, then optionally prune the server.

    Args:
        env_file: Optional path to a .env file to load configuration from.
        folder: Explicit folders to back up.
        delete_before: Retention cutoff date.
        delete_older_than_days: Retention age in days.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)

    if settings.imap is None:
        typer.echo(_MISSING_IMAP, err=True)
        raise typer.Exit(code=2)

    cutoff = resolve_cutoff(
        settings,
        delete_before=delete_before,
        delete_older_than_days=delete_older_than_days,
    )

    orchestrator = BackupOrchestrator(settings=settings)
    try:
        summary = asyncio.run(orchestrator.run(cutoff=cutoff, folders=folder or None))
    except KeyboardInterrupt:
        raise typer.Exit(code=130) from None
    except BackupError as exc:
        logger.error("Backup aborted: %s", exc)
        typer.echo(f"Backup aborted: {exc}", err=True)
        raise typer.Exit(code=1) from None

    raise typer.Exit(code=1 if summary.failed else 0)


@app.command("folders")
def folders_cmd(
    *,
    env_file: Path | None = typer.Option(
        default=None,
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
) -> None:
    """List the folders a backup would consider.

    Args:
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    configure_logging(settings=settings.logging)

    imap_settings = settings.imap
    if imap_settings is None:
        typer.echo(_MISSING_IMAP, err=True)
        raise typer.Exit(code=2)

    async def _list() -> list[str]:
        pool = ImapPool(
            host=imap_settings.host,
            port=imap_settings.port,
            ssl=imap_settings.ssl,
            username=imap_settings.username,
            password=imap_settings.password,
            size=1,
            timeout_seconds=imap_settings.timeout_seconds,
            connect_attempts=imap_settings.connect_attempts,
        )
        try:
            await pool.connect()
            async with pool.acquire() as client:
                return await list_folders(client, pattern=imap_settings.list_pattern)
        finally:
            await pool.logout()

    try:
        names = asyncio.run(_list())
    except ProtocolError as exc:
        typer.echo(f"Listing folders failed: {exc}", err=True)
        raise typer.Exit(code=1) from None

    for name in names:
        typer.echo(name)


@app.command("verify")
def verify_cmd(
    *,
    env_file: Path | None = typer.Option(
        default=None,
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
) -> None:
    """Re-read every archived message and check it against its recorded digest.

    Args:
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    db = StateDb(sqlite_path=settings.storage.sqlite_path)
    db.init_schema()
    archive = LocalArchive(archive_dir=settings.storage.archive_dir, db=db)

    checked = 0
    mismatches = 0
    for row, ok in archive.verify():
        checked += 1
        if not ok:
            mismatches += 1
            typer.echo(f"MISMATCH {row.folder} uidvalidity={row.uidvalidity} uid={row.uid}")

    counts = db.counts_by_folder()
    db.close()

    typer.echo(f"Messages checked: {checked}")
    typer.echo(f"Archive mismatches: {mismatches}")
    for name, count in counts.items():
        typer.echo(f"{name}: {count}")

    raise typer.Exit(code=1 if mismatches else 0)


@app.command("report")
def report_cmd(
    *,
    env_file: Path | None = typer.Option(
        default=None,
        exists=True,
        dir_okay=False,
        help="Optional path to a .env file (in addition to environment variables).",
    ),
) -> None:
    """Export an archive report (JSON) from sqlite state.

    Args:
        env_file: Optional path to a .env file to load configuration from.
    """
    settings = load_app_settings(env_file=env_file)
    db = StateDb(sqlite_path=settings.storage.sqlite_path)
    db.init_schema()
    archive = LocalArchive(archive_dir=settings.storage.archive_dir, db=db)

    mismatches = sum(1 for _, ok in archive.verify() if not ok)
    folders = db.counts_by_folder()
    db.close()

    report = SummaryReport(
        created_at=datetime.now(tz=UTC),
        sqlite_path=str(settings.storage.sqlite_path),
        archive_dir=str(settings.storage.archive_dir),
        folders=folders,
        archive_mismatches=mismatches,
    )

    settings.storage.reports_dir.mkdir(parents=True, exist_ok=True)
    out_path = settings.storage.reports_dir / f"summary-{report.created_at:%Y%m%dT%H%M%SZ}.json"
    out_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
    typer.echo(f"Wrote {out_path}")
