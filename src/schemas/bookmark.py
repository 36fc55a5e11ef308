"""Pydantic schemas for bookmark endpoints."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Schemes accepted as-is; anything else gets https:// prefixed
URL_SCHEMES = ("http://", "https://")
DEFAULT_SCHEME = "https://"


def normalize_url(url: str | None) -> str:
    """
    Trim a URL and prefix https:// when it has no http(s) scheme.

    An empty or whitespace-only value stays empty so required-field checks still
    reject it. No further syntax validation is done; the value is otherwise
    stored as given. Normalizing an already normalized URL is a no-op.
    """
    if url is None:
        return ""
    url = url.strip()
    if not url:
        return ""
    if url.lower().startswith(URL_SCHEMES):
        return url
    return DEFAULT_SCHEME + url


def normalize_title(title: str | None) -> str:
    """Trim surrounding whitespace from a title (None becomes empty)."""
    if title is None:
        return ""
    return title.strip()


class BookmarkCreate(BaseModel):
    """
    Schema for creating a new bookmark.

    Both fields are optional at the schema level so that a missing or blank
    value is reported by the service as a 400 validation error rather than a
    422 request parsing error.
    """

    url: str | None = None
    title: str | None = None

    @field_validator("url", mode="after")
    @classmethod
    def normalize_url_field(cls, v: str | None) -> str:
        """Trim and add a scheme when missing."""
        return normalize_url(v)

    @field_validator("title", mode="after")
    @classmethod
    def normalize_title_field(cls, v: str | None) -> str:
        """Trim surrounding whitespace."""
        return normalize_title(v)


class BookmarkResponse(BaseModel):
    """Schema for bookmark responses and realtime insert payloads."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    url: str
    title: str
    user_id: UUID
    created_at: datetime


class BookmarkListResponse(BaseModel):
    """Owner-scoped bookmark snapshot, newest first."""

    items: list[BookmarkResponse]
    total: int = Field(ge=0)


class DeleteBookmarkResponse(BaseModel):
    """Response for a delete request (also returned when no row matched)."""

    success: bool = True
