"""Server-side deletion of messages older than a cutoff."""

from __future__ import annotations

import logging
from datetime import datetime

from imap_backup.errors import ConsistencyError
from imap_backup.imap.fetch import imap_date
from imap_backup.imap.session import MailSession

logger = logging.getLogger(__name__)

DELETED_FLAG = "\\Deleted"


async def delete_messages_before(
    session: MailSession,
    folder: str,
    cutoff: datetime,
    *,
    uidvalidity: int | None = None,
    through_uid: int | None = None,
) -> int:
    """Flag and expunge every message in `folder` dated strictly before `cutoff`.

    Callers must only do this after the folder was downloaded successfully in the
    current UIDVALIDITY epoch; nothing here checks the archive. Passing the epoch and
    the highest archived UID of that download turns the usage rule into a check.

    Args:
        session: Connected remote session.
        folder: Folder name.
        cutoff: Messages with an internal date before this day are deleted.
        uidvalidity: If set, the epoch the folder must still be in.
        through_uid: If set, UIDs above it (arrived after the download) are kept.

    Returns:
        Number of UIDs flagged and expunged.

    Raises:
        NotFoundError: If the folder cannot be selected.
        ConsistencyError: If the folder's epoch is no longer `uidvalidity`.
        ProtocolError: If SEARCH, STORE or EXPUNGE fails.
    """
    info = await session.select(folder)
    if uidvalidity is not None and info.uidvalidity != uidvalidity:
        raise ConsistencyError(folder=folder, expected=uidvalidity, actual=info.uidvalidity)
    if info.message_count == 0:
        return 0

    uids = sorted(set(await session.uid_search(["BEFORE", imap_date(cutoff.date())])))
    if through_uid is not None:
        newer = [uid for uid in uids if uid > through_uid]
        if newer:
            logger.info("%s: keeping %d messages not yet archived", folder, len(newer))
        uids = [uid for uid in uids if uid <= through_uid]
    if not uids:
        logger.info("%s: nothing older than %s", folder, cutoff.date())
        return 0

    await session.add_flags(uids, [DELETED_FLAG], silent=True)
    await session.expunge()
    logger.info("%s: deleted %d messages older than %s", folder, len(uids), cutoff.date())
    return len(uids)
