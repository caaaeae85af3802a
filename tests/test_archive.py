"""Tests for the append-only mboxrd archive."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

import pytest

from imap_backup.errors import StorageError
from imap_backup.storage.archive import (
    LocalArchive,
    _safe_folder_name,
    decode_record,
    encode_record,
)
from imap_backup.storage.state_db import StateDb

_WHEN = datetime(2021, 3, 4, 5, 6, 7, tzinfo=UTC)


def test_append_is_idempotent_per_uid(archive: LocalArchive) -> None:
    """A second append of the same (uidvalidity, uid) writes nothing."""
    folder = archive.open_folder("INBOX")

    first = folder.append(100, 1, "alice@example.com", _WHEN, b"Subject: a\r\n\r\nbody\r\n")
    size_after_first = folder.path.stat().st_size
    again = folder.append(100, 1, "alice@example.com", _WHEN, b"different bytes")

    assert first.written is True
    assert again.written is False
    assert again.offset == first.offset
    assert folder.path.stat().st_size == size_after_first


def test_same_uid_in_new_epoch_is_a_new_record(archive: LocalArchive) -> None:
    """UIDs are only unique within one UIDVALIDITY."""
    folder = archive.open_folder("INBOX")

    old = folder.append(100, 1, None, _WHEN, b"old")
    new = folder.append(200, 1, None, _WHEN, b"new")

    assert new.written is True
    assert new.offset > old.offset
    assert folder.read(new.row) == b"new"


def test_offsets_are_distinct_and_increasing(archive: LocalArchive) -> None:
    """Every appended record starts after the previous one."""
    folder = archive.open_folder("Sent")

    offsets = [folder.append(7, uid, None, _WHEN, b"m%d" % uid).offset for uid in range(1, 6)]

    assert offsets[0] == 0
    assert offsets == sorted(set(offsets))


def test_read_restores_from_quoted_lines(archive: LocalArchive) -> None:
    """Body lines starting with `From ` survive the mboxrd round trip."""
    body = b"Subject: x\n\nFrom here\n>From there\nplain\n"
    folder = archive.open_folder("INBOX")

    result = folder.append(1, 1, "bob@example.com", _WHEN, body)
    raw = folder.path.read_bytes()

    assert raw.startswith(b"From bob@example.com Thu Mar  4 05:06:07 2021\n")
    assert b"\n>From here\n>>From there\n" in raw
    assert folder.read(result.row) == body


def test_body_without_trailing_newline_round_trips() -> None:
    """The separator newline is not part of the restored message."""
    record = encode_record(sender=None, date=_WHEN, body=b"no newline")

    assert record.startswith(b"From MAILER-DAEMON ")
    assert decode_record(record, size=len(b"no newline")) == b"no newline"


def test_decode_record_rejects_garbage() -> None:
    """A record must start with a separator line."""
    with pytest.raises(StorageError):
        decode_record(b"Subject: x\n\n", size=3)


def test_verify_flags_corrupted_records(archive: LocalArchive) -> None:
    """verify() compares each record with its recorded digest."""
    folder = archive.open_folder("INBOX")
    folder.append(1, 1, None, _WHEN, b"first message\n")
    folder.append(1, 2, None, _WHEN, b"second message\n")

    data = bytearray(folder.path.read_bytes())
    pos = data.rindex(b"second")
    data[pos : pos + 6] = b"SECOND"
    folder.path.write_bytes(bytes(data))

    results = {row.uid: ok for row, ok in archive.verify()}
    assert results == {1: True, 2: False}


def test_folder_names_do_not_collide(archive: LocalArchive) -> None:
    """Folders that sanitize to the same text get separate files."""
    a = archive.open_folder("Work/Projects")
    b = archive.open_folder("Work_Projects")

    assert a.path != b.path
    assert a.path.parent == archive.archive_dir
    assert _safe_folder_name("Work/Projects").startswith("Work_Projects-")
    assert archive.open_folder("Work/Projects") is a


def test_write_failure_raises_storage_error(archive: LocalArchive, db: StateDb) -> None:
    """An unwritable archive file surfaces as StorageError and indexes nothing."""
    folder = archive.open_folder("INBOX")
    folder.path.mkdir(parents=True)

    with pytest.raises(StorageError):
        folder.append(1, 1, None, _WHEN, b"body")
    assert db.count_folder_messages("INBOX") == 0


def test_failed_index_insert_rolls_back_the_record(
    archive: LocalArchive,
    db: StateDb,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A record whose index row cannot be written is removed from the file."""
    folder = archive.open_folder("INBOX")
    kept = folder.append(1, 1, None, _WHEN, b"kept\n")
    size_before = folder.path.stat().st_size

    def locked(**_: object) -> None:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "insert_message", locked)
    with pytest.raises(StorageError):
        folder.append(1, 2, None, _WHEN, b"lost\n")
    monkeypatch.undo()

    assert folder.path.stat().st_size == size_before
    retry = folder.append(1, 2, None, _WHEN, b"lost\n")
    assert retry.written is True
    assert retry.offset == size_before
    assert folder.read(retry.row) == b"lost\n"
    assert folder.read(kept.row) == b"kept\n"
    assert [ok for _, ok in archive.verify()] == [True, True]


def test_first_record_rollback_leaves_an_empty_file(
    archive: LocalArchive,
    db: StateDb,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A retried first append starts at offset zero."""
    folder = archive.open_folder("INBOX")

    def locked(**_: object) -> None:
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "insert_message", locked)
    with pytest.raises(StorageError):
        folder.append(1, 1, None, _WHEN, b"body\n")
    monkeypatch.undo()

    assert folder.append(1, 1, None, _WHEN, b"body\n").offset == 0
