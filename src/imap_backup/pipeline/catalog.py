"""Remote folder enumeration."""

from __future__ import annotations

import logging

from imap_backup.imap.session import MailSession

logger = logging.getLogger(__name__)


async def list_folders(session: MailSession, *, pattern: str = "%") -> list[str]:
    """List every mailbox matching `pattern` under the root, in code point order.

    Args:
        session: Connected remote session.
        pattern: LIST wildcard (`%` lists the top level, `*` the whole hierarchy).

    Returns:
        Sorted, deduplicated mailbox names.

    Raises:
        ProtocolError: If the LIST command fails; the session is unusable after that.
    """
    folders = sorted(set(await session.list_mailboxes(pattern)))
    logger.info("Found %d folders", len(folders))
    for name in folders:
        logger.debug(" - %s", name)
    return folders
