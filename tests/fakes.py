"""In-memory stand-ins for the remote session and progress display."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime

from imap_backup.errors import NotFoundError, ProtocolError
from imap_backup.imap.client import SelectInfo
from imap_backup.imap.fetch import (
    BodyItem,
    EnvelopeItem,
    FetchedMessage,
    FetchItem,
    MessageSummary,
    SizeItem,
    UidItem,
)

_MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def make_body(subject: str, *, size: int = 0) -> bytes:
    """Build a small RFC822 message, padded to at least `size` bytes."""
    raw = f"From: alice@example.com\r\nSubject: {subject}\r\n\r\nHello {subject}\r\n".encode()
    if len(raw) < size:
        raw += b"x" * (size - len(raw))
    return raw


@dataclass
class FakeMessage:
    """A message held by the fake server."""

    uid: int
    body: bytes | None
    date: datetime = datetime(2020, 1, 1, tzinfo=UTC)
    sender: str | None = "alice@example.com"
    declared_size: int | None = None

    @property
    def size(self) -> int:
        if self.declared_size is not None:
            return self.declared_size
        return len(self.body or b"")


@dataclass
class FakeMailbox:
    """A folder on the fake server."""

    uidvalidity: int | None
    messages: list[FakeMessage] = field(default_factory=list)
    deleted: set[int] = field(default_factory=set)

    def add(self, body: bytes | None, **kwargs: object) -> FakeMessage:
        uid = max((m.uid for m in self.messages), default=0) + 1
        message = FakeMessage(uid=uid, body=body, **kwargs)  # type: ignore[arg-type]
        self.messages.append(message)
        return message


class FakeSession:
    """In-memory stand-in for ImapClient with the same session surface."""

    def __init__(self, mailboxes: dict[str, FakeMailbox]) -> None:
        self.mailboxes = mailboxes
        self.selected: str | None = None
        self.calls: list[str] = []
        self.open_streams = 0
        self.closed_streams = 0
        self.list_extra: list[str] = []
        self.fail_list = False
        self.fail_fetch = False
        self.before_select: Callable[[str], None] | None = None

    def _mailbox(self) -> FakeMailbox:
        if self.selected is None:
            raise ProtocolError("no mailbox selected")
        return self.mailboxes[self.selected]

    async def list_mailboxes(self, pattern: str = "*") -> list[str]:
        self.calls.append(f"LIST {pattern}")
        if self.fail_list:
            raise ProtocolError("IMAP LIST failed: BAD")
        return list(self.mailboxes) + self.list_extra

    async def select(self, mailbox: str) -> SelectInfo:
        self.calls.append(f"SELECT {mailbox}")
        if self.before_select is not None:
            self.before_select(mailbox)
        self.selected = None
        if mailbox not in self.mailboxes:
            raise NotFoundError(f"IMAP SELECT refused ({mailbox})")
        self.selected = mailbox
        box = self.mailboxes[mailbox]
        next_uid = max((m.uid for m in box.messages), default=0) + 1
        return SelectInfo(
            mailbox=mailbox,
            uidvalidity=box.uidvalidity,
            uidnext=next_uid,
            exists=len(box.messages),
        )

    async def fetch_metadata(self, first: int, last: int) -> list[MessageSummary]:
        self.calls.append(f"FETCH {first}:{last} (UID RFC822.SIZE)")
        box = self._mailbox()
        return [
            MessageSummary(seq_num=seq, uid=m.uid, size=m.size)
            for seq, m in enumerate(box.messages[first - 1 : last], start=first)
        ]

    async def fetch_full(self, first: int, last: int) -> AsyncIterator[FetchedMessage]:
        self.calls.append(f"FETCH {first}:{last} (UID RFC822.SIZE ENVELOPE BODY.PEEK[])")
        box = self._mailbox()
        if self.fail_fetch:
            raise ProtocolError("IMAP FETCH failed: NO")
        self.open_streams += 1
        try:
            for seq, m in enumerate(list(box.messages[first - 1 : last]), start=first):
                items: list[FetchItem] = [
                    UidItem(uid=m.uid),
                    SizeItem(size=m.size),
                    EnvelopeItem(sender=m.sender, date=m.date),
                    BodyItem(data=m.body),
                ]
                shift = seq % len(items)
                yield FetchedMessage(seq_num=seq, items=tuple(items[shift:] + items[:shift]))
        finally:
            self.open_streams -= 1
            self.closed_streams += 1

    async def uid_search(self, criteria: Iterable[str]) -> list[int]:
        criteria = list(criteria)
        self.calls.append("UID SEARCH " + " ".join(criteria))
        box = self._mailbox()
        assert criteria[0] == "BEFORE"
        day, month, year = criteria[1].split("-")
        before = date(int(year), _MONTHS.index(month) + 1, int(day))
        return [m.uid for m in box.messages if m.date.date() < before]

    async def add_flags(
        self,
        uids: Iterable[int],
        flags: Iterable[str],
        *,
        silent: bool = True,
    ) -> None:
        uids = list(uids)
        flags = list(flags)
        command = "+FLAGS.SILENT" if silent else "+FLAGS"
        self.calls.append(f"UID STORE {len(uids)} {command} {flags}")
        box = self._mailbox()
        if "\\Deleted" in flags:
            box.deleted.update(uids)

    async def expunge(self) -> None:
        self.calls.append("EXPUNGE")
        box = self._mailbox()
        box.messages = [m for m in box.messages if m.uid not in box.deleted]
        box.deleted.clear()


class ByteCounter:
    """Progress sink that records every advance."""

    def __init__(self) -> None:
        self.total = 0
        self.steps: list[int] = []

    def advance(self, n_bytes: int) -> None:
        assert n_bytes >= 0
        self.steps.append(n_bytes)
        self.total += n_bytes

