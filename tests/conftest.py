"""Shared fixtures: an in-memory IMAP session and an on-disk archive."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fakes import ByteCounter, FakeMailbox, FakeSession, make_body

from imap_backup.storage.archive import LocalArchive
from imap_backup.storage.state_db import StateDb


@pytest.fixture
def inbox() -> FakeMailbox:
    """INBOX with three messages under UIDVALIDITY 100."""
    box = FakeMailbox(uidvalidity=100)
    box.add(make_body("one", size=120))
    box.add(make_body("two", size=340))
    box.add(make_body("three", size=560))
    return box


@pytest.fixture
def session(inbox: FakeMailbox) -> FakeSession:
    """Fake session holding INBOX."""
    return FakeSession({"INBOX": inbox})


@pytest.fixture
def db(tmp_path: Path) -> Iterator[StateDb]:
    """Initialized state database in a temp dir."""
    state = StateDb(sqlite_path=tmp_path / "state.sqlite3")
    state.init_schema()
    yield state
    state.close()


@pytest.fixture
def archive(tmp_path: Path, db: StateDb) -> LocalArchive:
    """Local archive in a temp dir."""
    return LocalArchive(archive_dir=tmp_path / "archive", db=db)


@pytest.fixture
def progress() -> ByteCounter:
    """Recording progress sink."""
    return ByteCounter()
