"""Append-only local message archive (one mboxrd file per folder)."""

from __future__ import annotations

import logging
import os
import re
import sqlite3
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from imap_backup.errors import StorageError
from imap_backup.models.state import ArchivedMessageRow
from imap_backup.storage.state_db import StateDb
from imap_backup.utils.digest import sha256_hex

_FOLDER_SAFE_RE = re.compile(r"[^A-Za-z0-9._-]+")
_FROM_RE = re.compile(rb"^(>*From )", re.MULTILINE)
_QUOTED_FROM_RE = re.compile(rb"^>(>*From )", re.MULTILINE)
_SENDER_SAFE_RE = re.compile(r"\s+")

logger = logging.getLogger(__name__)


def _safe_folder_name(folder: str) -> str:
    """Normalize folder names for filesystem-safe archive files.

    A short digest of the raw name keeps folders that sanitize to the same text apart.

    Args:
        folder: IMAP folder name.

    Returns:
        Sanitized file stem.
    """
    sanitized = folder.strip()
    sanitized = sanitized.replace(os.sep, "_").replace("/", "_")
    sanitized = _FOLDER_SAFE_RE.sub("_", sanitized)
    sanitized = sanitized.strip("._-") or "folder"
    return f"{sanitized}-{sha256_hex(folder.encode('utf-8'))[:8]}"


def _separator_line(sender: str | None, date: datetime | None) -> bytes:
    """Build the mbox `From ` separator line."""
    addr = _SENDER_SAFE_RE.sub("", sender or "") or "MAILER-DAEMON"
    when = (date or datetime.now(tz=UTC)).astimezone(UTC)
    return f"From {addr} {time.asctime(when.timetuple())}\n".encode("utf-8", errors="replace")


def encode_record(*, sender: str | None, date: datetime | None, body: bytes) -> bytes:
    """Encode a message as an mboxrd record.

    Args:
        sender: Envelope sender address.
        date: Envelope date.
        body: Raw RFC822 message bytes.

    Returns:
        Separator line, quoted body and a terminating blank line.
    """
    quoted = _FROM_RE.sub(rb">\1", body)
    if not quoted.endswith(b"\n"):
        quoted += b"\n"
    return _separator_line(sender, date) + quoted + b"\n"


def decode_record(record: bytes, *, size: int) -> bytes:
    """Recover the original message bytes from an mboxrd record.

    Args:
        record: Record bytes as written by `encode_record`.
        size: Size of the original message.

    Returns:
        Original message bytes.

    Raises:
        StorageError: If the record does not start with a separator line.
    """
    if not record.startswith(b"From "):
        raise StorageError("archive record does not start with a From_ line")
    _, _, quoted = record.partition(b"\n")
    return _QUOTED_FROM_RE.sub(rb"\1", quoted)[:size]


@dataclass(frozen=True)
class AppendResult:
    """Result of appending a message to a folder archive."""

    offset: int
    written: bool
    row: ArchivedMessageRow


class FolderArchive:
    """Single-writer handle on one folder's archive file."""

    def __init__(self, *, folder: str, path: Path, db: StateDb) -> None:
        """Initialize the folder archive.

        Args:
            folder: IMAP folder name.
            path: Archive file path.
            db: State database holding the archive index.
        """
        self._folder = folder
        self._path = path
        self._db = db
        self._lock = threading.Lock()

    @property
    def folder(self) -> str:
        """Return the IMAP folder name."""
        return self._folder

    @property
    def path(self) -> Path:
        """Return the archive file path."""
        return self._path

    def append(
        self,
        uidvalidity: int,
        uid: int,
        sender: str | None,
        date: datetime | None,
        body: bytes,
    ) -> AppendResult:
        """Append a message unless `(uidvalidity, uid)` is already archived.

        Args:
            uidvalidity: UIDVALIDITY epoch of the message.
            uid: Message UID.
            sender: Envelope sender address.
            date: Envelope date.
            body: Raw RFC822 message bytes.

        Returns:
            The record offset and whether a new record was written.

        Raises:
            StorageError: If the archive file or the index cannot be updated.
        """
        with self._lock:
            try:
                existing = self._db.find_message(
                    folder=self._folder,
                    uidvalidity=uidvalidity,
                    uid=uid,
                )
            except sqlite3.Error as exc:
                raise StorageError(
                    f"archive index lookup failed for {self._folder!r}: {exc}",
                ) from exc
            if existing is not None:
                return AppendResult(offset=existing.offset, written=False, row=existing)

            record = encode_record(sender=sender, date=date, body=body)
            offset: int | None = None
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("ab") as handle:
                    handle.seek(0, os.SEEK_END)
                    offset = handle.tell()
                    handle.write(record)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                if offset is not None:
                    self._truncate(offset)
                raise StorageError(f"failed to append to {self._path}: {exc}") from exc
            assert offset is not None

            try:
                row = self._db.insert_message(
                    folder=self._folder,
                    uidvalidity=uidvalidity,
                    uid=uid,
                    offset=offset,
                    length=len(record),
                    sha256=sha256_hex(body),
                    size_bytes=len(body),
                    sender=sender,
                    date=date,
                )
            except sqlite3.Error as exc:
                self._truncate(offset)
                raise StorageError(
                    f"failed to index uid={uid} at offset={offset} in {self._path}: {exc}",
                ) from exc

            logger.debug(
                "Archived %s uid=%s at offset %s (%s bytes)",
                self._folder,
                uid,
                offset,
                len(record),
            )
            return AppendResult(offset=offset, written=True, row=row)

    def _truncate(self, offset: int) -> None:
        """Drop a record that was written but never indexed.

        Args:
            offset: Size of the file before the failed append.
        """
        try:
            os.truncate(self._path, offset)
        except OSError as exc:
            logger.error(
                "Could not roll back %s to %s bytes: %s",
                self._path,
                offset,
                exc,
                extra={"folder": self._folder, "offset": offset},
            )

    def read(self, row: ArchivedMessageRow) -> bytes:
        """Read back the original bytes of an archived message.

        Args:
            row: Archive index row for this folder.

        Returns:
            Original message bytes.

        Raises:
            StorageError: If the record cannot be read in full.
        """
        try:
            with self._path.open("rb") as handle:
                handle.seek(row.offset)
                record = handle.read(row.length)
        except OSError as exc:
            raise StorageError(f"failed to read {self._path}: {exc}") from exc
        if len(record) != row.length:
            raise StorageError(
                f"truncated record for uid={row.uid} at offset={row.offset} in {self._path}",
            )
        return decode_record(record, size=row.size_bytes)


class LocalArchive:
    """Per-folder append-only archive files indexed in the state database."""

    def __init__(self, *, archive_dir: Path, db: StateDb) -> None:
        """Initialize the archive.

        Args:
            archive_dir: Directory holding the folder archive files.
            db: State database holding the archive index.
        """
        self._archive_dir = archive_dir
        self._db = db
        self._folders: dict[str, FolderArchive] = {}
        self._lock = threading.Lock()

    @property
    def archive_dir(self) -> Path:
        """Return the archive directory."""
        return self._archive_dir

    def open_folder(self, folder: str) -> FolderArchive:
        """Return the (cached) archive handle for a folder.

        Args:
            folder: IMAP folder name.

        Returns:
            FolderArchive for the folder.
        """
        with self._lock:
            handle = self._folders.get(folder)
            if handle is None:
                path = self._archive_dir / f"{_safe_folder_name(folder)}.mbox"
                handle = FolderArchive(folder=folder, path=path, db=self._db)
                self._folders[folder] = handle
            return handle

    def verify(self) -> Iterator[tuple[ArchivedMessageRow, bool]]:
        """Re-read every archived message and compare it with its recorded digest.

        Yields:
            `(row, ok)` for every indexed message.
        """
        for row in self._db.iter_messages():
            try:
                data = self.open_folder(row.folder).read(row)
            except StorageError as exc:
                logger.warning("Archive record unreadable: %s", exc)
                yield row, False
                continue
            yield row, sha256_hex(data) == row.sha256
