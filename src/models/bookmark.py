"""Bookmark model for storing user bookmarks."""
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, CreatedAtMixin, UUIDMixin

if TYPE_CHECKING:
    from models.user import User


class Bookmark(Base, UUIDMixin, CreatedAtMixin):
    """
    Bookmark model - an owned URL with a title.

    Rows are immutable: they are created and deleted, never updated.
    """

    __tablename__ = "bookmarks"
    __table_args__ = (
        # Serves the owner-scoped, newest-first snapshot query
        Index("ix_bookmarks_user_id_created_at", "user_id", "created_at"),
    )

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)

    user: Mapped["User"] = relationship(back_populates="bookmarks")
