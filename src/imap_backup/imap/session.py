"""Structural type for the remote session the backup pipeline drives."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterable
from typing import Protocol

from imap_backup.imap.client import SelectInfo
from imap_backup.imap.fetch import FetchedMessage, MessageSummary


class MailSession(Protocol):
    """A connected session with a single selected mailbox at a time.

    `ImapClient` is the production implementation. Callers must not share one session
    between concurrent folder operations.
    """

    async def list_mailboxes(self, pattern: str = "*") -> list[str]: ...

    async def select(self, mailbox: str) -> SelectInfo: ...

    async def fetch_metadata(self, first: int, last: int) -> list[MessageSummary]: ...

    def fetch_full(self, first: int, last: int) -> AsyncIterator[FetchedMessage]: ...

    async def uid_search(self, criteria: Iterable[str]) -> list[int]: ...

    async def add_flags(
        self,
        uids: Iterable[int],
        flags: Iterable[str],
        *,
        silent: bool = True,
    ) -> None: ...

    async def expunge(self) -> None: ...
