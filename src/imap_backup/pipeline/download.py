"""Streaming a folder's messages into the local archive."""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from imap_backup.errors import ConsistencyError, ProtocolError
from imap_backup.imap.fetch import BodyItem, EnvelopeItem, FetchedMessage, SizeItem, UidItem
from imap_backup.imap.session import MailSession
from imap_backup.models.snapshot import FolderSnapshot, MessageMeta, SyncResult
from imap_backup.pipeline.progress import ProgressSink
from imap_backup.storage.archive import AppendResult

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    """Destination of archived messages, idempotent per `(uidvalidity, uid)`."""

    def append(
        self,
        uidvalidity: int,
        uid: int,
        sender: str | None,
        date: datetime | None,
        body: bytes,
    ) -> AppendResult: ...


@dataclass
class _Collected:
    """Items of one FETCH response, gathered in whatever order they arrived."""

    uid: int | None = None
    size: int | None = None
    sender: str | None = None
    date: datetime | None = None
    body: bytes | None = None


def _collect(message: FetchedMessage) -> _Collected:
    out = _Collected()
    for item in message.items:
        match item:
            case UidItem(uid=uid):
                out.uid = uid
            case SizeItem(size=size):
                out.size = size
            case EnvelopeItem(sender=sender, date=date):
                out.sender = sender
                out.date = date
            case BodyItem(data=data):
                out.body = data
    return out


def _advance(progress: ProgressSink, n_bytes: int) -> None:
    """Report progress; a failing display never affects the archive."""
    try:
        progress.advance(n_bytes)
    except Exception as exc:
        logger.warning("Progress update failed: %r", exc)


async def download(
    session: MailSession,
    snapshot: FolderSnapshot,
    store: MessageStore,
    progress: ProgressSink,
) -> SyncResult:
    """Archive every message of the snapshot's folder that the store does not have yet.

    The folder is re-selected and its UIDVALIDITY compared with the snapshot before
    anything is fetched. Messages are then processed in one forward pass over a single
    FETCH of the whole mailbox; the store decides whether a UID is new.

    Args:
        session: Connected remote session.
        snapshot: Snapshot of the folder, from this session or an earlier one.
        store: Destination archive for the folder.
        progress: Receives the declared size of each newly archived message.

    Returns:
        SyncResult with the newly archived messages (offsets resolved).

    Raises:
        NotFoundError: If the folder can no longer be selected.
        ConsistencyError: If UIDVALIDITY changed since the snapshot; nothing is written.
        ProtocolError: If the FETCH fails or a message arrives without a UID.
        StorageError: If the store rejects a message.
    """
    folder = snapshot.name
    info = await session.select(folder)
    if info.uidvalidity != snapshot.uidvalidity:
        logger.error(
            "UIDVALIDITY of %s changed from %s to %s; not downloading",
            folder,
            snapshot.uidvalidity,
            info.uidvalidity,
            extra={
                "folder": folder,
                "snapshot_uidvalidity": snapshot.uidvalidity,
                "server_uidvalidity": info.uidvalidity,
            },
        )
        raise ConsistencyError(
            folder=folder,
            expected=snapshot.uidvalidity,
            actual=info.uidvalidity,
        )

    if info.message_count == 0:
        return SyncResult(folder=folder, uidvalidity=snapshot.uidvalidity)

    known = {meta.uid: meta for meta in snapshot.messages}
    archived: list[MessageMeta] = []
    already_archived = 0
    skipped_empty = 0
    bytes_archived = 0
    highest_seen: int | None = None

    async with aclosing(session.fetch_full(1, info.message_count)) as stream:
        async for message in stream:
            fields = _collect(message)
            if not fields.body:
                logger.warning(
                    "Body of %s seq=%s uid=%s is empty; skipping",
                    folder,
                    message.seq_num,
                    fields.uid,
                )
                skipped_empty += 1
                continue
            if fields.uid is None:
                raise ProtocolError(f"FETCH for {folder!r} seq={message.seq_num} has no UID")

            result = store.append(
                snapshot.uidvalidity,
                fields.uid,
                fields.sender,
                fields.date,
                fields.body,
            )
            highest_seen = max(fields.uid, highest_seen or 0)
            if not result.written:
                already_archived += 1
                continue

            meta = known.get(fields.uid) or MessageMeta(
                seq_num=message.seq_num,
                uidvalidity=snapshot.uidvalidity,
                uid=fields.uid,
                size=fields.size if fields.size is not None else len(fields.body),
            )
            if fields.size is not None and fields.size != meta.size:
                meta = meta.model_copy(update={"size": fields.size})
            meta = meta.with_offset(result.offset)
            archived.append(meta)
            bytes_archived += meta.size
            _advance(progress, meta.size)

    logger.info(
        "%s: archived %d, already archived %d, skipped %d empty",
        folder,
        len(archived),
        already_archived,
        skipped_empty,
    )
    return SyncResult(
        folder=folder,
        uidvalidity=snapshot.uidvalidity,
        archived=tuple(archived),
        already_archived=already_archived,
        skipped_empty=skipped_empty,
        bytes_archived=bytes_archived,
        highest_uid_seen=highest_seen,
    )
