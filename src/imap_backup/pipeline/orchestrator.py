"""Async orchestration of a backup run: list, snapshot, download, prune."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from imap_backup.config.settings import AppSettings
from imap_backup.errors import ConsistencyError, NotFoundError, ProtocolError, StorageError
from imap_backup.imap.client import ImapPool
from imap_backup.imap.session import MailSession
from imap_backup.models.snapshot import FolderSnapshot, SyncResult
from imap_backup.models.types import FolderOutcome, FolderStatus, RunSummary
from imap_backup.pipeline.catalog import list_folders
from imap_backup.pipeline.download import download
from imap_backup.pipeline.progress import RichProgressSink
from imap_backup.pipeline.retention import delete_messages_before
from imap_backup.pipeline.snapshot import build_snapshot
from imap_backup.storage.archive import LocalArchive
from imap_backup.storage.state_db import StateDb

logger = logging.getLogger(__name__)


class BackupOrchestrator:
    """Coordinates folder listing, snapshots, downloads and retention for one account."""

    def __init__(self, *, settings: AppSettings, console: Console | None = None) -> None:
        """Initialize the orchestrator.

        Args:
            settings: Application settings.
            console: Rich console for progress and summary output.
        """
        self._s = settings
        self._console = console or Console()

    async def run(
        self,
        *,
        cutoff: datetime | None = None,
        folders: list[str] | None = None,
    ) -> RunSummary:
        """Run a backup of every selected folder.

        Args:
            cutoff: If set, delete server messages older than this after archiving.
            folders: Optional explicit folder list overriding `folder_include`.

        Returns:
            Summary with one outcome per folder considered.

        Raises:
            ValueError: If IMAP settings are missing.
            ProtocolError: If connecting, listing or snapshotting fails.
            StorageError: If the local archive rejects a message.
        """
        settings = self._s
        if settings.imap is None:
            raise ValueError(
                "IMAP settings are missing. Set at least IMAP_BACKUP_IMAP__HOST, "
                "IMAP_BACKUP_IMAP__USERNAME and IMAP_BACKUP_IMAP__PASSWORD.",
            )

        console = self._console
        console.print(f"[bold blue]Backup starting[/bold blue] (retention cutoff={cutoff})")
        console.print(f"  [dim]Archive:[/dim] {settings.storage.archive_dir}")
        console.print(f"  [dim]Database:[/dim] {settings.storage.sqlite_path}")

        settings.storage.root_dir.mkdir(parents=True, exist_ok=True)
        settings.storage.archive_dir.mkdir(parents=True, exist_ok=True)
        settings.storage.sqlite_path.parent.mkdir(parents=True, exist_ok=True)

        db = StateDb(sqlite_path=settings.storage.sqlite_path)
        db.init_schema()
        archive = LocalArchive(archive_dir=settings.storage.archive_dir, db=db)

        pool = ImapPool(
            host=settings.imap.host,
            port=settings.imap.port,
            ssl=settings.imap.ssl,
            username=settings.imap.username,
            password=settings.imap.password,
            size=settings.imap.connections,
            timeout_seconds=settings.imap.timeout_seconds,
            fetch_timeout_seconds=settings.imap.fetch_timeout_seconds,
            connect_attempts=settings.imap.connect_attempts,
        )

        summary = RunSummary(started_at=datetime.now(tz=UTC))
        try:
            with console.status("[bold green]Connecting to IMAP...[/bold green]"):
                await pool.connect()
            console.print(
                f"[green]✔[/green] IMAP connections established ({settings.imap.connections})",
            )
            summary.outcomes = await self._run_with_pool(
                pool=pool,
                db=db,
                archive=archive,
                cutoff=cutoff,
                only=folders,
            )
        finally:
            await pool.logout()
            db.close()

        summary.finished_at = datetime.now(tz=UTC)
        self._print_summary(summary)
        return summary

    async def _run_with_pool(
        self,
        *,
        pool: ImapPool,
        db: StateDb,
        archive: LocalArchive,
        cutoff: datetime | None,
        only: list[str] | None,
    ) -> list[FolderOutcome]:
        """List folders, snapshot them, then download each with its own session."""
        imap_settings = self._s.imap
        assert imap_settings is not None

        async with pool.acquire() as client:
            mailboxes = await list_folders(client, pattern=imap_settings.list_pattern)

        mailboxes, missing = self._filter_mailboxes(mailboxes, only=only)
        unlisted = [
            FolderOutcome(
                folder=name,
                status=FolderStatus.skipped_not_found,
                reason="not on server",
            )
            for name in missing
        ]
        if not mailboxes:
            self._console.print("[yellow]⚠[/yellow] No mailboxes selected.")
            return unlisted

        outcomes: dict[str, FolderOutcome] = {}
        progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self._console,
            expand=True,
        )

        with progress:
            snapshots: list[FolderSnapshot] = []
            scan_task = progress.add_task("[cyan]Scanning folders...", total=len(mailboxes))
            async with pool.acquire() as client:
                for mailbox in mailboxes:
                    try:
                        snapshot = await build_snapshot(client, mailbox)
                    except NotFoundError as exc:
                        logger.warning(
                            "Skipping %s: %s",
                            mailbox,
                            exc,
                            extra={"folder": mailbox},
                        )
                        outcomes[mailbox] = FolderOutcome(
                            folder=mailbox,
                            status=FolderStatus.skipped_not_found,
                            reason=str(exc),
                        )
                    else:
                        self._note_epoch(db, snapshot)
                        snapshots.append(snapshot)
                    progress.advance(scan_task)
            progress.remove_task(scan_task)

            overall_task = progress.add_task(
                "[bold magenta]Overall",
                total=sum(s.total_size for s in snapshots),
            )

            tasks = [
                asyncio.create_task(
                    self._process_folder(
                        pool=pool,
                        snapshot=snapshot,
                        db=db,
                        archive=archive,
                        cutoff=cutoff,
                        progress=progress,
                        overall_task=overall_task,
                    ),
                )
                for snapshot in snapshots
            ]
            try:
                for outcome in await asyncio.gather(*tasks):
                    outcomes[outcome.folder] = outcome
            except BaseException:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        return [outcomes[name] for name in mailboxes if name in outcomes] + unlisted

    def _filter_mailboxes(
        self,
        mailboxes: list[str],
        *,
        only: list[str] | None,
    ) -> tuple[list[str], list[str]]:
        """Apply include/exclude filters to a mailbox list.

        Args:
            mailboxes: Mailbox names.
            only: Explicit folder list that replaces the configured includes.

        Returns:
            Filtered mailbox list (order preserved) and the requested folders the
            server did not list (sorted).
        """
        imap_settings = self._s.imap
        assert imap_settings is not None

        wanted = only if only else imap_settings.folder_include
        include = {name.strip() for name in wanted if name.strip()}
        exclude = {name.strip() for name in imap_settings.folder_exclude if name.strip()}

        missing = sorted(include.difference(mailboxes).difference(exclude))
        for name in missing:
            logger.warning("Requested folder %s is not on the server", name, extra={"folder": name})

        out: list[str] = []
        for mailbox in mailboxes:
            if include and mailbox not in include:
                continue
            if mailbox in exclude:
                continue
            out.append(mailbox)
        return out, missing

    @staticmethod
    def _note_epoch(db: StateDb, snapshot: FolderSnapshot) -> None:
        """Log when a folder's epoch differs from the one archived previously."""
        previous = db.get_folder(name=snapshot.name)
        if previous is None or previous.uidvalidity in (None, snapshot.uidvalidity):
            return
        logger.warning(
            "UIDVALIDITY of %s changed from %s to %s since the last run; "
            "archiving it again as a fresh folder",
            snapshot.name,
            previous.uidvalidity,
            snapshot.uidvalidity,
            extra={
                "folder": snapshot.name,
                "stored_uidvalidity": previous.uidvalidity,
                "server_uidvalidity": snapshot.uidvalidity,
            },
        )

    async def _process_folder(
        self,
        *,
        pool: ImapPool,
        snapshot: FolderSnapshot,
        db: StateDb,
        archive: LocalArchive,
        cutoff: datetime | None,
        progress: Progress,
        overall_task: TaskID,
    ) -> FolderOutcome:
        """Download one folder and, if it fully succeeded, apply retention.

        Raises:
            StorageError: Propagated so the run stops at the first archive failure.
        """
        folder = snapshot.name
        folder_task = progress.add_task(f"[blue]{folder}", total=snapshot.total_size)
        sink = RichProgressSink(
            progress=progress,
            folder_task=folder_task,
            overall_task=overall_task,
        )
        try:
            async with pool.acquire() as client:
                try:
                    result = await download(client, snapshot, archive.open_folder(folder), sink)
                except ConsistencyError as exc:
                    return FolderOutcome(
                        folder=folder,
                        status=FolderStatus.failed_consistency,
                        uidvalidity=exc.expected,
                        server_uidvalidity=exc.actual,
                        reason=str(exc),
                    )
                except NotFoundError as exc:
                    logger.warning("Skipping %s: %s", folder, exc, extra={"folder": folder})
                    return FolderOutcome(
                        folder=folder,
                        status=FolderStatus.skipped_not_found,
                        uidvalidity=snapshot.uidvalidity,
                        reason=str(exc),
                    )
                except ProtocolError as exc:
                    logger.error(
                        "Download of %s failed: %s",
                        folder,
                        exc,
                        extra={"folder": folder, "uidvalidity": snapshot.uidvalidity},
                    )
                    return FolderOutcome(
                        folder=folder,
                        status=FolderStatus.failed_protocol,
                        uidvalidity=snapshot.uidvalidity,
                        reason=str(exc),
                    )
                except StorageError as exc:
                    logger.error(
                        "Archive write for %s failed: %s",
                        folder,
                        exc,
                        extra={"folder": folder, "uidvalidity": snapshot.uidvalidity},
                    )
                    raise

                self._record_folder(db, result)
                outcome = FolderOutcome(
                    folder=folder,
                    status=FolderStatus.synced,
                    archived=result.archived_count,
                    already_archived=result.already_archived,
                    skipped_empty=result.skipped_empty,
                    uidvalidity=result.uidvalidity,
                )
                if cutoff is None:
                    return outcome
                return await self._apply_retention(client, result, outcome, cutoff)
        finally:
            # Already-archived messages never report progress; settle the overall bar.
            remaining = snapshot.total_size - sink.total
            if remaining > 0:
                progress.advance(overall_task, advance=remaining)
            progress.remove_task(folder_task)

    @staticmethod
    def _record_folder(db: StateDb, result: SyncResult) -> None:
        """Store the folder's epoch and the highest UID archived under it."""
        previous = db.get_folder(name=result.folder)
        last_uid = result.highest_uid
        if previous is not None and previous.uidvalidity == result.uidvalidity:
            last_uid = max(filter(None, (previous.last_uid_seen, last_uid)), default=None)
        db.upsert_folder(name=result.folder, uidvalidity=result.uidvalidity, last_uid_seen=last_uid)

    @staticmethod
    async def _apply_retention(
        client: MailSession,
        result: SyncResult,
        outcome: FolderOutcome,
        cutoff: datetime,
    ) -> FolderOutcome:
        """Delete messages older than `cutoff`, unless the download left gaps or the epoch moved."""
        if result.skipped_empty:
            logger.warning(
                "Not pruning %s: %d messages were skipped and are not archived",
                result.folder,
                result.skipped_empty,
                extra={"folder": result.folder},
            )
            return outcome.model_copy(
                update={"reason": "retention skipped: some messages were not archived"},
            )
        try:
            deleted = await delete_messages_before(
                client,
                result.folder,
                cutoff,
                uidvalidity=result.uidvalidity,
                through_uid=result.highest_uid_seen or 0,
            )
        except ConsistencyError as exc:
            logger.error(
                "Not pruning %s: %s",
                result.folder,
                exc,
                extra={
                    "folder": result.folder,
                    "uidvalidity": exc.expected,
                    "server_uidvalidity": exc.actual,
                },
            )
            return outcome.model_copy(
                update={
                    "status": FolderStatus.failed_consistency,
                    "server_uidvalidity": exc.actual,
                    "reason": str(exc),
                },
            )
        except (NotFoundError, ProtocolError) as exc:
            logger.error(
                "Retention for %s failed: %s",
                result.folder,
                exc,
                extra={"folder": result.folder, "uidvalidity": result.uidvalidity},
            )
            return outcome.model_copy(
                update={"status": FolderStatus.failed_protocol, "reason": str(exc)},
            )
        return outcome.model_copy(update={"deleted": deleted})

    def _print_summary(self, summary: RunSummary) -> None:
        """Print one line per folder, failures with their reason."""
        console = self._console
        console.print("\n[bold green]Backup finished![/bold green]")
        for o in summary.outcomes:
            if o.ok:
                console.print(
                    f"  [dim]{o.folder}:[/dim] archived [bold]{o.archived}[/bold], "
                    f"already archived {o.already_archived}, skipped {o.skipped_empty}, "
                    f"deleted {o.deleted}",
                )
            else:
                console.print(
                    f"  [red]{o.folder}:[/red] {o.status.value} "
                    f"(uidvalidity={o.uidvalidity}, server={o.server_uidvalidity}) {o.reason}",
                )
