"""Error taxonomy shared by the IMAP session, the archive and the backup pipeline."""

from __future__ import annotations


class BackupError(RuntimeError):
    """Base class for backup failures."""


class ProtocolError(BackupError):
    """Raised when the remote session fails a command at the transport/command layer."""


class NotFoundError(BackupError):
    """Raised when a mailbox does not exist or cannot be selected."""


class ConsistencyError(BackupError):
    """Raised when a folder's UIDVALIDITY no longer matches its snapshot."""

    def __init__(self, *, folder: str, expected: int, actual: int | None) -> None:
        """Initialize the error.

        Args:
            folder: Folder name.
            expected: UIDVALIDITY recorded in the snapshot.
            actual: UIDVALIDITY reported by the server now.
        """
        super().__init__(
            f"uid validity changed for {folder!r}: snapshot={expected} server={actual}",
        )
        self.folder = folder
        self.expected = expected
        self.actual = actual


class StorageError(BackupError):
    """Raised when the local archive rejects an append."""
