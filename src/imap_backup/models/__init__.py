"""Validated domain models (Pydantic)."""

from __future__ import annotations

from imap_backup.models.snapshot import FolderSnapshot, MessageMeta, SyncResult
from imap_backup.models.types import FolderOutcome, FolderStatus, RunSummary, SummaryReport

__all__ = [
    "FolderOutcome",
    "FolderSnapshot",
    "FolderStatus",
    "MessageMeta",
    "RunSummary",
    "SummaryReport",
    "SyncResult",
]
