"""Shared enums and lightweight Pydantic models."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from imap_backup.models.base import AppModel


class FolderStatus(StrEnum):
    """Per-folder outcome of a backup run."""

    synced = "synced"
    skipped_not_found = "skipped_not_found"
    failed_consistency = "failed_consistency"
    failed_protocol = "failed_protocol"
    failed_storage = "failed_storage"


class FolderOutcome(AppModel):
    """What happened to one folder during a run."""

    folder: str
    status: FolderStatus
    archived: int = Field(default=0, ge=0)
    already_archived: int = Field(default=0, ge=0)
    skipped_empty: int = Field(default=0, ge=0)
    deleted: int = Field(default=0, ge=0)
    uidvalidity: int | None = None
    server_uidvalidity: int | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        """Return whether the folder was synced."""
        return self.status == FolderStatus.synced


class RunSummary(AppModel):
    """Outcomes of every folder considered in a run."""

    started_at: datetime
    finished_at: datetime | None = None
    outcomes: list[FolderOutcome] = Field(default_factory=list)

    @property
    def failed(self) -> list[FolderOutcome]:
        """Return outcomes that did not end in a successful sync."""
        return [o for o in self.outcomes if not o.ok]


class SummaryReport(AppModel):
    """Archive report emitted by the CLI."""

    created_at: datetime
    sqlite_path: str
    archive_dir: str
    folders: dict[str, int] = Field(default_factory=dict)
    archive_mismatches: int = 0
