"""Tests for streaming folder downloads into the archive."""

from __future__ import annotations

from datetime import datetime

import pytest
from fakes import ByteCounter, FakeMailbox, FakeSession, make_body

from imap_backup.errors import ConsistencyError, ProtocolError, StorageError
from imap_backup.pipeline.download import download
from imap_backup.pipeline.snapshot import build_snapshot
from imap_backup.storage.archive import AppendResult, FolderArchive, LocalArchive
from imap_backup.storage.state_db import StateDb


def _full_fetches(session: FakeSession) -> list[str]:
    return [call for call in session.calls if "BODY.PEEK[]" in call]


@pytest.mark.asyncio
async def test_first_run_archives_every_message(
    session: FakeSession,
    inbox: FakeMailbox,
    archive: LocalArchive,
    progress: ByteCounter,
) -> None:
    """Each message is written once with its own offset; progress sums to the bytes."""
    snapshot = await build_snapshot(session, "INBOX")
    store = archive.open_folder("INBOX")

    result = await download(session, snapshot, store, progress)

    assert result.archived_count == 3
    assert result.already_archived == 0
    assert result.bytes_archived == 1020
    assert [m.uid for m in result.archived] == [1, 2, 3]
    offsets = [m.offset for m in result.archived]
    assert None not in offsets
    assert len(set(offsets)) == 3
    assert progress.total == 1020
    assert progress.steps == [120, 340, 560]
    assert _full_fetches(session) == ["FETCH 1:3 (UID RFC822.SIZE ENVELOPE BODY.PEEK[])"]

    rows = {row.uid: row for row, _ in archive.verify()}
    for message in inbox.messages:
        assert store.read(rows[message.uid]) == message.body
        assert rows[message.uid].sender == "alice@example.com"


@pytest.mark.asyncio
async def test_second_run_archives_nothing(
    session: FakeSession,
    archive: LocalArchive,
    db: StateDb,
) -> None:
    """Re-running against an unchanged folder is a no-op for the archive."""
    store = archive.open_folder("INBOX")
    snapshot = await build_snapshot(session, "INBOX")
    await download(session, snapshot, store, ByteCounter())
    size_before = store.path.stat().st_size

    rerun = ByteCounter()
    result = await download(session, await build_snapshot(session, "INBOX"), store, rerun)

    assert result.archived_count == 0
    assert result.already_archived == 3
    assert rerun.total == 0
    assert result.highest_uid_seen == 3
    assert store.path.stat().st_size == size_before
    assert db.count_folder_messages("INBOX") == 3


@pytest.mark.asyncio
async def test_uidvalidity_change_aborts_before_fetching(
    session: FakeSession,
    inbox: FakeMailbox,
    archive: LocalArchive,
    db: StateDb,
    progress: ByteCounter,
) -> None:
    """A changed epoch raises ConsistencyError and leaves the archive untouched."""
    snapshot = await build_snapshot(session, "INBOX")
    inbox.uidvalidity = 101
    store = archive.open_folder("INBOX")

    with pytest.raises(ConsistencyError) as exc_info:
        await download(session, snapshot, store, progress)

    assert exc_info.value.folder == "INBOX"
    assert exc_info.value.expected == 100
    assert exc_info.value.actual == 101
    assert _full_fetches(session) == []
    assert not store.path.exists()
    assert db.count_folder_messages("INBOX") == 0
    assert progress.total == 0


@pytest.mark.asyncio
async def test_empty_bodies_are_skipped(
    session: FakeSession,
    inbox: FakeMailbox,
    archive: LocalArchive,
    progress: ByteCounter,
) -> None:
    """Messages without a body are counted and never written."""
    inbox.add(b"")
    inbox.add(None, declared_size=50)
    snapshot = await build_snapshot(session, "INBOX")

    result = await download(session, snapshot, archive.open_folder("INBOX"), progress)

    assert result.skipped_empty == 2
    assert [m.uid for m in result.archived] == [1, 2, 3]
    assert progress.total == 1020


@pytest.mark.asyncio
async def test_messages_arriving_after_snapshot_are_archived(
    session: FakeSession,
    inbox: FakeMailbox,
    archive: LocalArchive,
    progress: ByteCounter,
) -> None:
    """The message count at download time decides how far the fetch goes."""
    snapshot = await build_snapshot(session, "INBOX")
    late = inbox.add(make_body("late", size=77))

    result = await download(session, snapshot, archive.open_folder("INBOX"), progress)

    assert result.archived_count == 4
    newest = result.archived[-1]
    assert (newest.uid, newest.seq_num, newest.size) == (late.uid, 4, 77)
    assert newest.resolved
    assert progress.total == 1020 + 77


@pytest.mark.asyncio
async def test_folder_emptied_after_snapshot(
    session: FakeSession,
    inbox: FakeMailbox,
    archive: LocalArchive,
    progress: ByteCounter,
) -> None:
    """Nothing is fetched when the folder is empty at download time."""
    snapshot = await build_snapshot(session, "INBOX")
    inbox.messages.clear()

    result = await download(session, snapshot, archive.open_folder("INBOX"), progress)

    assert result.archived_count == 0
    assert result.uidvalidity == 100
    assert _full_fetches(session) == []


class _FailingStore:
    """Store that rejects the second message."""

    def __init__(self, inner: FolderArchive) -> None:
        self._inner = inner

    def append(
        self,
        uidvalidity: int,
        uid: int,
        sender: str | None,
        date: datetime | None,
        body: bytes,
    ) -> AppendResult:
        if uid == 2:
            raise StorageError("disk full")
        return self._inner.append(uidvalidity, uid, sender, date, body)


@pytest.mark.asyncio
async def test_storage_error_stops_the_download(
    session: FakeSession,
    archive: LocalArchive,
    db: StateDb,
    progress: ByteCounter,
) -> None:
    """Archive failures propagate and the fetch stream is closed."""
    snapshot = await build_snapshot(session, "INBOX")
    store = _FailingStore(archive.open_folder("INBOX"))

    with pytest.raises(StorageError):
        await download(session, snapshot, store, progress)

    assert session.open_streams == 0
    assert session.closed_streams == 1
    assert db.count_folder_messages("INBOX") == 1
    assert progress.total == 120


@pytest.mark.asyncio
async def test_fetch_failure_raises_protocol_error(
    session: FakeSession,
    archive: LocalArchive,
    db: StateDb,
    progress: ByteCounter,
) -> None:
    """A failed FETCH surfaces as ProtocolError with nothing archived."""
    snapshot = await build_snapshot(session, "INBOX")
    session.fail_fetch = True

    with pytest.raises(ProtocolError):
        await download(session, snapshot, archive.open_folder("INBOX"), progress)

    assert db.count_folder_messages("INBOX") == 0


class _BrokenDisplay:
    def advance(self, n_bytes: int) -> None:
        raise RuntimeError("terminal went away")


@pytest.mark.asyncio
async def test_progress_failures_do_not_stop_archiving(
    session: FakeSession,
    archive: LocalArchive,
) -> None:
    """Progress reporting is best-effort."""
    snapshot = await build_snapshot(session, "INBOX")

    result = await download(session, snapshot, archive.open_folder("INBOX"), _BrokenDisplay())

    assert result.archived_count == 3
