"""SQLAlchemy models."""
from models.base import Base, CreatedAtMixin, TimestampMixin, UUIDMixin
from models.bookmark import Bookmark
from models.user import User

__all__ = ["Base", "Bookmark", "CreatedAtMixin", "TimestampMixin", "UUIDMixin", "User"]
