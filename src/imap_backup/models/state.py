"""Pydantic models for database state."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from imap_backup.models.base import AppModel


class FolderRow(AppModel):
    """Row model for the folders table."""

    name: str = Field(min_length=1)
    uidvalidity: int | None = Field(default=None, ge=1)
    last_uid_seen: int | None = Field(default=None, ge=0)
    created_at: datetime
    updated_at: datetime


class ArchivedMessageRow(AppModel):
    """Row model for the messages (archive index) table."""

    id: int = Field(ge=1)
    folder: str = Field(min_length=1)
    uidvalidity: int = Field(ge=1)
    uid: int = Field(ge=1)

    offset: int = Field(ge=0)
    length: int = Field(ge=0)
    sha256: str = Field(min_length=64, max_length=64)
    size_bytes: int = Field(ge=0)

    sender: str | None = None
    date: datetime | None = None

    created_at: datetime
