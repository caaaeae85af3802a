"""Folder snapshot models built before transferring message bodies."""

from __future__ import annotations

from typing import Annotated, Self

from pydantic import Field, model_validator

from imap_backup.models.base import FrozenModel

UidValidity = Annotated[int, Field(ge=1, le=2**32 - 1)]


class MessageMeta(FrozenModel):
    """Identity and declared size of one remote message.

    `seq_num` is only meaningful within the selection it was read from. `offset` is
    None until the archive accepts the message body.
    """

    seq_num: int = Field(ge=1)
    uidvalidity: UidValidity
    uid: int = Field(ge=1)
    size: int = Field(ge=0)
    offset: int | None = Field(default=None, ge=0)

    @property
    def resolved(self) -> bool:
        """Return whether the archive offset has been assigned."""
        return self.offset is not None

    def with_offset(self, offset: int) -> MessageMeta:
        """Return a copy with the archive offset resolved.

        Args:
            offset: Byte offset of the archived record.

        Returns:
            New MessageMeta carrying the offset.

        Raises:
            ValueError: If this message already has an offset.
        """
        if self.offset is not None:
            raise ValueError(f"offset already resolved for uid={self.uid}: {self.offset}")
        return self.model_copy(update={"offset": offset})


class FolderSnapshot(FrozenModel):
    """Point-in-time metadata for every message in a folder."""

    name: str = Field(min_length=1)
    uidvalidity: UidValidity
    total_size: int = Field(default=0, ge=0)
    messages: tuple[MessageMeta, ...] = ()

    @model_validator(mode="after")
    def _check_consistency(self) -> Self:
        """Reject messages from another epoch and mismatched size totals."""
        for meta in self.messages:
            if meta.uidvalidity != self.uidvalidity:
                raise ValueError(
                    f"message uid={meta.uid} has uidvalidity={meta.uidvalidity}, "
                    f"snapshot has {self.uidvalidity}",
                )
        expected = sum(meta.size for meta in self.messages)
        if self.total_size != expected:
            raise ValueError(f"total_size={self.total_size} but messages sum to {expected}")
        return self

    @property
    def is_empty(self) -> bool:
        """Return whether the folder had no messages at snapshot time."""
        return not self.messages


class SyncResult(FrozenModel):
    """Outcome of downloading one folder snapshot into the archive.

    `highest_uid_seen` is the largest UID of the pass that is now archived, whether it
    was written in this run or before.
    """

    folder: str
    uidvalidity: UidValidity
    archived: tuple[MessageMeta, ...] = ()
    already_archived: int = Field(default=0, ge=0)
    skipped_empty: int = Field(default=0, ge=0)
    bytes_archived: int = Field(default=0, ge=0)
    highest_uid_seen: int | None = Field(default=None, ge=1)

    @property
    def archived_count(self) -> int:
        """Return the number of messages newly written to the archive."""
        return len(self.archived)

    @property
    def highest_uid(self) -> int | None:
        """Return the largest UID written in this run, if any."""
        return max((meta.uid for meta in self.archived), default=None)
