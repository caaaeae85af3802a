"""Metadata-only snapshots of a folder's messages."""

from __future__ import annotations

import logging

from imap_backup.errors import ProtocolError
from imap_backup.imap.session import MailSession
from imap_backup.models.snapshot import FolderSnapshot, MessageMeta

logger = logging.getLogger(__name__)


async def build_snapshot(session: MailSession, folder: str) -> FolderSnapshot:
    """Select `folder` and record UID, size and sequence number of every message.

    The session's selected mailbox is `folder` afterwards. Messages keep the order
    the server returned them in.

    Args:
        session: Connected remote session.
        folder: Folder name.

    Returns:
        Immutable snapshot with every offset unresolved.

    Raises:
        NotFoundError: If the folder cannot be selected.
        ProtocolError: If the server omits UIDVALIDITY or the metadata fetch fails.
    """
    info = await session.select(folder)
    if info.uidvalidity is None:
        raise ProtocolError(f"server did not report UIDVALIDITY for {folder!r}")
    logger.info("%s contains %d messages", folder, info.message_count)

    if info.message_count == 0:
        return FolderSnapshot(name=folder, uidvalidity=info.uidvalidity)

    messages: list[MessageMeta] = []
    total_size = 0
    for summary in await session.fetch_metadata(1, info.message_count):
        messages.append(
            MessageMeta(
                seq_num=summary.seq_num,
                uidvalidity=info.uidvalidity,
                uid=summary.uid,
                size=summary.size,
            ),
        )
        total_size += summary.size

    return FolderSnapshot(
        name=folder,
        uidvalidity=info.uidvalidity,
        total_size=total_size,
        messages=tuple(messages),
    )
