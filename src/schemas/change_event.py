"""Row-level change events delivered by the realtime bookmark feed."""
from enum import StrEnum
from uuid import UUID

from pydantic import BaseModel, model_validator

from schemas.bookmark import BookmarkResponse

BOOKMARKS_TABLE = "bookmarks"


class ChangeType(StrEnum):
    """Kind of row change."""

    INSERT = "INSERT"
    DELETE = "DELETE"


class DeletedRecord(BaseModel):
    """Identity of a deleted row (the row itself no longer exists)."""

    id: UUID
    user_id: UUID


class ChangeEvent(BaseModel):
    """
    A committed insert or delete on the bookmarks table.

    INSERT events carry the full row in `record`; DELETE events carry only the
    row identity in `old_record`.
    """

    type: ChangeType
    table: str = BOOKMARKS_TABLE
    record: BookmarkResponse | None = None
    old_record: DeletedRecord | None = None

    @model_validator(mode="after")
    def check_payload_matches_type(self) -> "ChangeEvent":
        """Require the payload field that corresponds to the event type."""
        if self.type == ChangeType.INSERT and self.record is None:
            raise ValueError("INSERT events require 'record'")
        if self.type == ChangeType.DELETE and self.old_record is None:
            raise ValueError("DELETE events require 'old_record'")
        return self

    @classmethod
    def inserted(cls, record: BookmarkResponse) -> "ChangeEvent":
        """Build an INSERT event for a newly created bookmark."""
        return cls(type=ChangeType.INSERT, record=record)

    @classmethod
    def deleted(cls, bookmark_id: UUID, user_id: UUID) -> "ChangeEvent":
        """Build a DELETE event for a removed bookmark."""
        return cls(
            type=ChangeType.DELETE,
            old_record=DeletedRecord(id=bookmark_id, user_id=user_id),
        )

    @property
    def owner_id(self) -> UUID:
        """Owner of the changed row; events are routed by this value."""
        if self.record is not None:
            return self.record.user_id
        return self.old_record.user_id

    @property
    def bookmark_id(self) -> UUID:
        """Id of the changed row."""
        if self.record is not None:
            return self.record.id
        return self.old_record.id
