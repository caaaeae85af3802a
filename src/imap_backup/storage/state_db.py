"""SQLite persistence for folder state and the archive index."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from imap_backup.models.state import ArchivedMessageRow, FolderRow


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def _dt_to_iso(value: datetime) -> str:
    """Convert datetime to ISO string in UTC.

    Naive datetimes are taken to be UTC already.

    Args:
        value: Datetime value.

    Returns:
        ISO-formatted string in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _iso_to_dt(value: str) -> datetime:
    """Parse ISO datetime strings into timezone-aware datetimes.

    Args:
        value: ISO-formatted datetime string.

    Returns:
        Parsed datetime, defaulting to UTC if no timezone is present.
    """
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


@dataclass(frozen=True)
class StateDbPaths:
    """Filesystem paths used by the state database."""

    sqlite_path: Path


class StateDb:
    """SQLite wrapper tracking folder epochs and where each message is archived."""

    def __init__(self, *, sqlite_path: Path) -> None:
        """Initialize the database connection.

        Args:
            sqlite_path: Path to the sqlite database file.
        """
        self._paths = StateDbPaths(sqlite_path=sqlite_path)
        self._conn = sqlite3.connect(
            sqlite_path,
            timeout=30,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

    @property
    def sqlite_path(self) -> Path:
        """Return the sqlite database path."""
        return self._paths.sqlite_path

    def close(self) -> None:
        """Close the underlying sqlite connection."""
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Provide a transaction context manager."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield self._conn
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def init_schema(self) -> None:
        """Create tables if missing and ensure sqlite PRAGMA settings."""
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS folders (
                  name TEXT PRIMARY KEY,
                  uidvalidity INTEGER,
                  last_uid_seen INTEGER,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  folder TEXT NOT NULL,
                  uidvalidity INTEGER NOT NULL,
                  uid INTEGER NOT NULL,
                  byte_offset INTEGER NOT NULL,
                  byte_length INTEGER NOT NULL,
                  sha256 TEXT NOT NULL,
                  size_bytes INTEGER NOT NULL,
                  sender TEXT,
                  date TEXT,
                  created_at TEXT NOT NULL,
                  UNIQUE(folder, uidvalidity, uid),
                  UNIQUE(folder, byte_offset)
                )
                """,
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_folder ON messages(folder)")

            conn.execute("PRAGMA user_version = 1")

    def upsert_folder(
        self,
        *,
        name: str,
        uidvalidity: int | None,
        last_uid_seen: int | None,
    ) -> FolderRow:
        """Insert or update a folder row.

        Args:
            name: Folder name.
            uidvalidity: UIDVALIDITY value for the folder.
            last_uid_seen: Highest UID archived from this folder.

        Returns:
            Updated folder row.
        """
        now = _utcnow()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO folders(name, uidvalidity, last_uid_seen, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                  uidvalidity=excluded.uidvalidity,
                  last_uid_seen=excluded.last_uid_seen,
                  updated_at=excluded.updated_at
                """,
                (name, uidvalidity, last_uid_seen, _dt_to_iso(now), _dt_to_iso(now)),
            )

        row = self.get_folder(name=name)
        assert row is not None
        return row

    def get_folder(self, *, name: str) -> FolderRow | None:
        """Fetch a folder row by name.

        Args:
            name: Folder name.

        Returns:
            Folder row if present, otherwise None.
        """
        row = self._conn.execute(
            """
            SELECT name, uidvalidity, last_uid_seen, created_at, updated_at
            FROM folders
            WHERE name=?
            """,
            (name,),
        ).fetchone()
        if row is None:
            return None
        return FolderRow(
            name=row["name"],
            uidvalidity=row["uidvalidity"],
            last_uid_seen=row["last_uid_seen"],
            created_at=_iso_to_dt(row["created_at"]),
            updated_at=_iso_to_dt(row["updated_at"]),
        )

    def find_message(
        self,
        *,
        folder: str,
        uidvalidity: int,
        uid: int,
    ) -> ArchivedMessageRow | None:
        """Look up an archived message by its durable key.

        Args:
            folder: Folder name.
            uidvalidity: UIDVALIDITY epoch.
            uid: Message UID.

        Returns:
            The archive index row if the message is archived, otherwise None.
        """
        row = self._conn.execute(
            "SELECT * FROM messages WHERE folder=? AND uidvalidity=? AND uid=?",
            (folder, uidvalidity, uid),
        ).fetchone()
        return self._row_to_message(row) if row is not None else None

    def insert_message(
        self,
        *,
        folder: str,
        uidvalidity: int,
        uid: int,
        offset: int,
        length: int,
        sha256: str,
        size_bytes: int,
        sender: str | None,
        date: datetime | None,
    ) -> ArchivedMessageRow:
        """Record where an archived message lives.

        Args:
            folder: Folder name.
            uidvalidity: UIDVALIDITY epoch.
            uid: Message UID.
            offset: Byte offset of the record in the folder archive file.
            length: Length of the record in bytes.
            sha256: SHA-256 digest of the original message bytes.
            size_bytes: Size of the original message bytes.
            sender: Envelope sender address.
            date: Envelope date.

        Returns:
            The inserted row.

        Raises:
            sqlite3.IntegrityError: If the key or the offset is already taken.
        """
        now = _utcnow()
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages(
                  folder, uidvalidity, uid, byte_offset, byte_length, sha256, size_bytes,
                  sender, date, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    folder,
                    uidvalidity,
                    uid,
                    offset,
                    length,
                    sha256,
                    size_bytes,
                    sender,
                    _dt_to_iso(date) if date is not None else None,
                    _dt_to_iso(now),
                ),
            )
            row = conn.execute(
                "SELECT * FROM messages WHERE id=?",
                (cursor.lastrowid,),
            ).fetchone()
            assert row is not None
            return self._row_to_message(row)

    def count_folder_messages(self, folder: str) -> int:
        """Return the number of archived messages for a folder.

        Args:
            folder: Folder name.

        Returns:
            Count of archived messages.
        """
        row = self._conn.execute(
            "SELECT COUNT(*) AS c FROM messages WHERE folder=?",
            (folder,),
        ).fetchone()
        return int(row["c"]) if row else 0

    def counts_by_folder(self) -> dict[str, int]:
        """Return archived message counts per folder.

        Returns:
            Mapping of folder name to count.
        """
        rows = self._conn.execute(
            "SELECT folder, COUNT(*) AS c FROM messages GROUP BY folder ORDER BY folder",
        ).fetchall()
        return {str(row["folder"]): int(row["c"]) for row in rows}

    def iter_messages(self, *, folder: str | None = None) -> Iterator[ArchivedMessageRow]:
        """Iterate archive index rows, optionally for one folder.

        Args:
            folder: Optional folder filter.

        Yields:
            ArchivedMessageRow instances in archive order.
        """
        if folder is None:
            rows = self._conn.execute(
                "SELECT * FROM messages ORDER BY folder, byte_offset",
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM messages WHERE folder=? ORDER BY byte_offset",
                (folder,),
            ).fetchall()
        for row in rows:
            yield self._row_to_message(row)

    def _row_to_message(self, row: Mapping[str, Any]) -> ArchivedMessageRow:
        """Convert a sqlite row to an ArchivedMessageRow.

        Args:
            row: Row mapping from sqlite.

        Returns:
            ArchivedMessageRow instance.
        """
        return ArchivedMessageRow(
            id=int(row["id"]),
            folder=str(row["folder"]),
            uidvalidity=int(row["uidvalidity"]),
            uid=int(row["uid"]),
            offset=int(row["byte_offset"]),
            length=int(row["byte_length"]),
            sha256=str(row["sha256"]),
            size_bytes=int(row["size_bytes"]),
            sender=row["sender"],
            date=_iso_to_dt(row["date"]) if row["date"] else None,
            created_at=_iso_to_dt(str(row["created_at"])),
        )
